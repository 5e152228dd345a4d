"""
Exception types raised by the aggregation pipeline.
"""


class PipelineError(Exception):
    """Base class for errors that end up on a failed job."""


class MalformedInput(PipelineError):
    """Upload is not usable: missing required column or unreadable header."""

    def __init__(self, message: str, missing_columns=None):
        super().__init__(message)
        self.missing_columns = list(missing_columns or [])


class ClassificationTransientFailure(PipelineError):
    """External classifier call failed in a way worth retrying."""


class ClassificationUnparseable(PipelineError):
    """Classifier answered, but the answer could not be parsed."""


class StoreUnavailable(PipelineError):
    """Relational store kept failing after retries."""


class AlreadyClaimed(Exception):
    """Another invocation already owns the job. Not a failure."""

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} is not queued")
        self.job_id = job_id
