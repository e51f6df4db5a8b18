"""
Error taxonomy for the RMRI engine.

Provides:
- RMRIError: Base class carrying an HTTP-style status code
- Input errors: ValidationError, InvalidModeError
- Lookup errors: NotFoundError, VersionNotFoundError
- Lifecycle errors: ConflictError, ForbiddenError
- Execution outcomes: AgentFailure, RoundFailure, RunTimeout, RunCancelled
- Agent-level signals: TransientAgentError, BackendUnavailableError, PaperUnavailableError
"""


class RMRIError(Exception):
    """Base class for all engine errors."""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(RMRIError):
    """Bad input to an engine operation (empty query, empty paper list, ...)."""

    status_code = 400


class InvalidModeError(ValidationError):
    """Context write mode is unknown or cannot be applied to the stored payload."""


class NotFoundError(RMRIError):
    """Unknown run, agent, or context key."""

    status_code = 404


class VersionNotFoundError(NotFoundError):
    """Requested context version does not exist."""

    def __init__(self, key: str, version: int):
        self.key = key
        self.version = version
        super().__init__(f"Version {version} not found for context key '{key}'")


class ConflictError(RMRIError):
    """Run is not in a state that allows the requested transition."""

    status_code = 409


class ForbiddenError(RMRIError):
    """Caller does not own the run."""

    status_code = 403


class AgentFailure(RMRIError):
    """An agent exhausted its retries."""

    def __init__(self, agent_id: str, reason: str):
        self.agent_id = agent_id
        self.reason = reason
        super().__init__(f"Agent {agent_id} failed: {reason}")


class RoundFailure(RMRIError):
    """A round could not produce enough micro output to continue."""

    def __init__(self, depth: int, message: str):
        self.depth = depth
        super().__init__(message)


class RunTimeout(RMRIError):
    """Watchdog detected no agent progress within the run timeout."""

    status_code = 504

    def __init__(self, run_id: str, timeout_ms: int):
        self.run_id = run_id
        self.timeout_ms = timeout_ms
        super().__init__(
            f"Run {run_id} timed out: no agent completed within {timeout_ms} ms"
        )


class RunCancelled(RMRIError):
    """Cancellation was requested and observed at a boundary."""

    status_code = 200

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run {run_id} was cancelled")


class TransientAgentError(Exception):
    """Retryable failure inside an agent (rate limit, flaky backend)."""


class BackendUnavailableError(Exception):
    """Backend still failing after its own retries; not retried again by the scheduler."""


class PaperUnavailableError(Exception):
    """Paper has no retrievable content; its micro agent is skipped."""

    def __init__(self, paper_id: str):
        self.paper_id = paper_id
        super().__init__(f"Paper {paper_id} has no title, abstract or text")
