"""
Typed failures raised by the orchestration layer.

Each error carries the HTTP status the REST layer answers with. WebSocket
handlers never let these escape; they close the socket instead.
"""


class OrchestratorError(Exception):
    """Base class for every orchestration failure."""

    status_code = 500

    def __init__(self, message: str = "", *, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(OrchestratorError):
    """Stored cluster credential is malformed, undecryptable or has no contexts."""

    status_code = 500


class ClusterUnavailable(OrchestratorError):
    """Cluster is missing, inactive or unreachable."""

    status_code = 503


class OrchestrationError(OrchestratorError):
    """A provisioning or lifecycle step failed."""

    status_code = 502


class InvalidTransition(OrchestrationError):
    status_code = 409

    def __init__(self, current, target):
        super().__init__(
            f"Cannot move environment from {current} to {target}",
            details={"current": str(current), "target": str(target)},
        )
        self.current = current
        self.target = target


class NotDeployed(OrchestratorError):
    """Operation needs cluster resources the environment does not have yet."""

    status_code = 409

    def __init__(self, environment_id: str):
        super().__init__(f"Environment {environment_id} is not deployed")
        self.environment_id = environment_id


class EnvironmentNotFound(OrchestratorError):
    status_code = 404

    def __init__(self, environment_id: str):
        super().__init__(f"Environment {environment_id} not found")
        self.environment_id = environment_id


class AuthRejected(OrchestratorError):
    """Bad token, inactive or locked principal, ownership mismatch or quota exceeded."""

    status_code = 401
