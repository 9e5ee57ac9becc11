"""webingest - Website event ingestion queue.

Turns events emitted by public website surfaces (lead forms, valuation
widgets, listing interactions) into CRM records through a durable,
retrying, dead-lettering job queue backed by PostgreSQL.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
