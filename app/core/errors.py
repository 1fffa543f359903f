"""Failure taxonomy shared by the invoker, the retry controller and the orchestrators.

Everything derived from ``PipelineError`` is something a unit-level retry may
re-attempt. ``AgentError`` subclasses are additionally retried at the single
call level; ``AuthFailure`` is not, because the same stale credential would be
used again.
"""


class PipelineError(Exception):
    """Base class for failures inside one unit of orchestrated work."""


class AgentError(PipelineError):
    def __init__(self, agent: str, detail: str) -> None:
        self.agent = agent
        self.detail = detail
        super().__init__(f"{agent}: {detail}")


class UpstreamUnavailable(AgentError):
    """The agent endpoint is not configured."""


class UpstreamTimeout(AgentError):
    pass


class UpstreamError(AgentError):
    def __init__(self, agent: str, detail: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(agent, detail)


class InvalidOutput(AgentError):
    """The agent answered, but the body is structurally empty."""


class AuthFailure(PipelineError):
    pass


class PersistenceError(PipelineError):
    pass


class IncompleteStageError(ValueError):
    """A stage was marked completed before all of its required sub-stages ran."""


class JobNotFound(LookupError):
    pass


class RetryUnavailable(ValueError):
    """An operator retry was requested but the stage's input data is gone."""
