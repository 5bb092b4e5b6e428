"""
Orchestrator Context

Owns every piece of process state the orchestrator needs: the store, the
per-cluster client cache, the connection registry and the services built on
them. Tests build their own context; the FastAPI app uses the lazily created
default from get_orchestrator_context().
"""

import logging
from typing import Any, Awaitable, Callable, Optional

from ...config import get_settings
from ..connection_manager import ConnectionManager
from ..encryption import KubeconfigEncryptionService
from ..store import EnvironmentStore, create_store
from .credentials import ClusterCredentialResolver
from .executor import CommandExecutor
from .lifecycle import EnvironmentLifecycleController
from .provisioner import EnvironmentProvisioner

logger = logging.getLogger(__name__)


class OrchestratorContext:
    """One orchestrator instance: resolver, provisioner, lifecycle, executor and connections."""

    def __init__(
        self,
        store: EnvironmentStore,
        settings=None,
        encryption_service: Optional[KubeconfigEncryptionService] = None,
        connection_manager: Optional[ConnectionManager] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store

        self.resolver = ClusterCredentialResolver(
            store,
            service_account_dir=self.settings.k8s_service_account_dir,
            encryption_service=encryption_service,
        )
        self.provisioner = EnvironmentProvisioner(self.resolver, store, self.settings, sleep=sleep)
        self.lifecycle = EnvironmentLifecycleController(self.resolver, store, self.settings, sleep=sleep)
        self.executor = CommandExecutor(self.resolver, store, self.settings)
        self.connections = connection_manager or ConnectionManager(
            heartbeat_interval=self.settings.ws_heartbeat_interval,
            max_connections_per_user=self.settings.ws_max_connections_per_user,
        )

    def start(self) -> None:
        self.connections.start()

    async def shutdown(self) -> None:
        self.lifecycle.cancel_restarts()
        await self.connections.teardown()
        self.resolver.clear()
        logger.info("[ORCHESTRATOR] Context shut down")


_context: Optional[OrchestratorContext] = None


def get_orchestrator_context() -> OrchestratorContext:
    """Get or create the process-wide context used by the FastAPI app."""
    global _context

    if _context is None:
        _context = OrchestratorContext(create_store())
        logger.info("[ORCHESTRATOR] Created default context")

    return _context


def set_orchestrator_context(context: Optional[OrchestratorContext]) -> None:
    """Install (or with None, drop) the process-wide context."""
    global _context
    _context = context
