"""
Error taxonomy surfaced by the job-coordination layer.

Command failures are not exceptions: they come back from the runner as a
failed ``CommandResult`` and are recorded on the job.
"""


class QueueError(Exception):
    """Base class for queuectl errors."""


class ValidationError(QueueError):
    """Malformed job specification or config write, rejected before any store mutation."""


class NotFoundError(QueueError):
    """Lookup or dead-letter retry of an id that does not exist."""

    def __init__(self, message: str, job_id: str | None = None):
        super().__init__(message)
        self.job_id = job_id


class StoreError(QueueError):
    """Transient failure talking to the transactional store."""
