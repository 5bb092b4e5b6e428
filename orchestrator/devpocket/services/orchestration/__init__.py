"""
Orchestration Module - DevPocket environments on Kubernetes

- credentials.ClusterCredentialResolver: per-cluster API clients (in-cluster or stored kubeconfig)
- retry.retry_operation: classified, linear-backoff retries for cluster calls
- provisioner.EnvironmentProvisioner: namespace/PVC/ConfigMap/Pod/Service pipeline
- lifecycle.EnvironmentLifecycleController: status, start/stop/restart, delete, logs
- executor.CommandExecutor: exec into the workspace container
- context.OrchestratorContext: owns all of the above for one process or test

Only the leaf modules (errors, state) are re-exported here; the models
import them, and the services import the models.

Usage:
    from devpocket.services.orchestration.context import get_orchestrator_context

    context = get_orchestrator_context()
    info = await context.provisioner.create_environment(environment_id)
"""

from .errors import (
    OrchestratorError,
    ConfigurationError,
    ClusterUnavailable,
    OrchestrationError,
    InvalidTransition,
    NotDeployed,
    EnvironmentNotFound,
    AuthRejected,
)
from .state import (
    EnvironmentStatus,
    ObservedStatus,
    ClusterStatus,
    SessionStatus,
    EnvironmentInfo,
    allowed_transitions,
    can_transition,
)

__all__ = [
    # Errors
    "OrchestratorError",
    "ConfigurationError",
    "ClusterUnavailable",
    "OrchestrationError",
    "InvalidTransition",
    "NotDeployed",
    "EnvironmentNotFound",
    "AuthRejected",
    # State
    "EnvironmentStatus",
    "ObservedStatus",
    "ClusterStatus",
    "SessionStatus",
    "EnvironmentInfo",
    "allowed_transitions",
    "can_transition",
]
