"""Error taxonomy shared by scheduler, job engine, and insights facade."""

from __future__ import annotations


class WorkgraphError(RuntimeError):
    """Base class for every error surfaced to CLI callers."""


class ScopeNotFoundError(WorkgraphError):
    """Project/epic/story/task scope could not be resolved."""


class InvalidTransitionError(WorkgraphError):
    """Job state change not allowed by the lifecycle table."""

    def __init__(
        self,
        message: str,
        *,
        job_id: str | None = None,
        state_from: str | None = None,
        state_to: str | None = None,
    ) -> None:
        super().__init__(message)
        self.job_id = job_id
        self.state_from = state_from
        self.state_to = state_to


class NoCheckpointError(WorkgraphError):
    """Resume requested for a job that never wrote a checkpoint."""


class ManifestMismatchError(WorkgraphError):
    """Checkpointed plan no longer matches the freshly computed plan."""


class AlreadyRunningError(WorkgraphError):
    """Resume requested for a job that is already running."""


class NotConfiguredError(WorkgraphError):
    """Jobs backend is required but was not configured."""


class RemoteUnavailableError(WorkgraphError):
    """Jobs backend could not be reached or answered with a server error."""


class JobNotFoundError(WorkgraphError):
    """Job id does not exist in the store."""


class ConcurrentUpdateError(WorkgraphError):
    """Compare-and-set update lost a race against another writer."""


class BackendPayloadError(WorkgraphError):
    """Jobs backend returned a payload that does not match the wire schema."""
