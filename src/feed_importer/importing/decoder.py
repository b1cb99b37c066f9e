"""CSV decoding of raw feed bodies into header-keyed rows."""

from __future__ import annotations

import csv
import io
from collections.abc import Iterator

from feed_importer.importing.errors import MalformedCsvError


def decode_csv(raw: bytes) -> list[dict[str, str]]:
    """Decode a UTF-8 CSV body (optional BOM) into rows keyed by header.

    Blank lines are skipped and short rows are padded with empty strings.
    A row with more cells than headers, a missing header, or duplicate
    header names make the whole body malformed.
    """

    try:
        text = raw.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise MalformedCsvError(message=f"Feed is not valid UTF-8: {exc.reason}") from exc

    reader = csv.reader(io.StringIO(text, newline=""), strict=True)
    try:
        header = _read_header(reader)
        rows: list[dict[str, str]] = []
        for cells in reader:
            if not any(cell.strip() for cell in cells):
                continue
            if len(cells) > len(header):
                raise MalformedCsvError(
                    message=(
                        f"Row at line {reader.line_num} has {len(cells)} cells, "
                        f"expected at most {len(header)}"
                    ),
                    line=reader.line_num,
                )
            values = [cell.strip() for cell in cells]
            padded = values + [""] * (len(header) - len(values))
            rows.append(dict(zip(header, padded, strict=True)))
    except csv.Error as exc:
        raise MalformedCsvError(
            message=f"Malformed CSV at line {reader.line_num}: {exc}",
            line=reader.line_num,
        ) from exc
    return rows


def _read_header(reader: Iterator[list[str]]) -> list[str]:
    for cells in reader:
        if not any(cell.strip() for cell in cells):
            continue
        header = [cell.strip() for cell in cells]
        if any(not name for name in header):
            raise MalformedCsvError(message="Feed header has a blank column name", line=1)
        seen: set[str] = set()
        for name in header:
            key = name.lower()
            if key in seen:
                raise MalformedCsvError(message=f"Duplicate header column: {name}", line=1)
            seen.add(key)
        return header
    raise MalformedCsvError(message="Feed has no header row", line=1)
