"""Ingestion worker service.

Background process that drains the ingestion queue and writes CRM records.

Usage:
    # Run as module
    python -m webingest.worker

    # Or via the console script
    webingest-worker
"""

from webingest.worker.main import Worker, WorkerConfig, run

__all__ = ["Worker", "WorkerConfig", "run"]
