"""Feed import pipeline: fetch, decode, reconcile, and track import jobs.

Imports are driven by a single in-process queue so that at most one feed is
reconciled at a time. Job records in SQLite are the only progress signal that
outside callers see.
"""
