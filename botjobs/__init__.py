"""botjobs - claim-and-execute engine for queued bot jobs."""

__version__ = "0.1.0"
