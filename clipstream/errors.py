"""Error taxonomy shared by the queue, the executor and the admin surface."""


class PipelineError(Exception):
    """Base class for everything the pipeline raises on purpose."""
    pass


class TransientError(PipelineError):
    """Storage timeout, inference unavailable, lease contention. Retried with backoff."""
    pass


class PermanentError(PipelineError):
    """Corrupt or unsupported media, malformed transcript. Fails the job without retry."""
    pass


class StageTimeout(TransientError):
    """A stage did not finish before its deadline."""
    pass


class LeaseLost(TransientError):
    """The caller no longer holds the lease it is acting under."""
    pass


class InvalidTransition(PipelineError):
    """An admin or queue operation was asked for a state it cannot leave from."""
    pass


class NotFound(PipelineError):
    pass


class StageFailure(PipelineError):
    """A stage error tagged with where it happened, as reported to the queue."""

    def __init__(self, video_id: str, stage: str, attempt: int, cause: Exception):
        self.video_id = video_id
        self.stage = stage
        self.attempt = attempt
        self.cause = cause
        self.permanent = isinstance(cause, PermanentError)
        super().__init__(f"video={video_id} stage={stage} attempt={attempt}: {cause}")


class AccessDenied(PipelineError):
    """The caller's stream role does not allow the action."""
    pass
