"""Best-effort price history recording."""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from feed_importer.importing.models import UpsertResult
from feed_importer.importing.repository import CatalogRepository

logger = logging.getLogger(__name__)


class PriceHistoryRecorder:
    """Appends a history entry whenever an upsert changed (or introduced) a price.

    Failures are logged and reported as ``False``; they never fail the row
    that produced them.
    """

    def __init__(self, repository: CatalogRepository) -> None:
        self.repository = repository

    def record(self, result: UpsertResult, *, feed_id: str, job_id: str) -> bool:
        if not result.price_changed:
            return False
        try:
            self.repository.add_price_history(
                product_id=result.product_id,
                price=result.price,
                previous_price=result.previous_price,
                feed_id=feed_id,
                job_id=job_id,
            )
        except SQLAlchemyError:
            logger.exception(
                "Failed to record price history for product %s (job %s)",
                result.product_id,
                job_id,
            )
            return False
        return True
