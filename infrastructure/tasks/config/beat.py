"""Celery beat schedule configuration.

Periodic housekeeping for the reconciliation ledgers.
"""
from __future__ import annotations

CELERY_BEAT_SCHEDULE = {
    "reconciliation-purge-processed-events": {
        "task": "reconciliation.purge_processed_events",
        "schedule": 3600,  # every hour
    },
}
