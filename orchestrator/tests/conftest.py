"""
Test configuration and fixtures for pytest.

Fixtures cover: signed tokens, in-memory environment/user records, a mocked
store, a mocked cluster client handle and an OrchestratorContext wired to
them. Nothing here talks to a real cluster or database server.
"""

import sys
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace
import pytest
from unittest.mock import Mock, AsyncMock

# Add the orchestrator directory to sys.path
orchestrator_dir = Path(__file__).parent.parent
sys.path.insert(0, str(orchestrator_dir))

TEST_SECRET_KEY = "test-secret-key-for-testing-only"


def pytest_configure(config):
    """
    Pytest hook called before test collection.
    Sets up test environment variables and registers custom markers.
    """
    # CRITICAL: Set test environment variables BEFORE any devpocket imports
    os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
    os.environ["SECRET_KEY"] = TEST_SECRET_KEY
    os.environ["KUBECONFIG_ENCRYPTION_KEY"] = ""
    os.environ["K8S_SERVICE_ACCOUNT_DIR"] = "/nonexistent/serviceaccount"
    os.environ["K8S_RETRY_BASE_DELAY_MS"] = "1"

    # Import and clear settings cache after env vars are set
    from devpocket.config import get_settings
    get_settings.cache_clear()

    # Register custom markers
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "kubernetes: mark test as exercising kubernetes client code")


@pytest.fixture
def settings():
    from devpocket.config import get_settings
    return get_settings()


@pytest.fixture
def make_token():
    """Factory for signed tokens in the auth service's format."""
    from jose import jwt

    def _make(user_id="u1", token_type="access", expires_in=timedelta(minutes=15), secret=TEST_SECRET_KEY):
        payload = {
            "userId": user_id,
            "type": token_type,
            "exp": datetime.now(timezone.utc) + expires_in,
        }
        return jwt.encode(payload, secret, algorithm="HS256")

    return _make


@pytest.fixture
def make_user():
    def _make(**overrides):
        values = dict(
            id="u1",
            username="testuser",
            email="test@example.com",
            is_active=True,
            account_locked_until=None,
        )
        values.update(overrides)
        return SimpleNamespace(**values)

    return _make


@pytest.fixture
def make_environment():
    """Environment record as the platform API creates it (CREATING, not deployed)."""
    def _make(**overrides):
        values = dict(
            id="e1",
            name="Python Sandbox",
            user_id="u1",
            cluster_id="c1",
            status="CREATING",
            docker_image="python:3.11-slim",
            port=8000,
            resources_cpu="500m",
            resources_memory="1Gi",
            resources_storage="5Gi",
            environment_variables={"PYTHONUNBUFFERED": "1"},
            startup_commands=["pip install ipython"],
            installation_completed=False,
            kubernetes_namespace=None,
            kubernetes_pod_name=None,
            kubernetes_service_name=None,
            external_url=None,
            last_error=None,
        )
        values.update(overrides)
        return SimpleNamespace(**values)

    return _make


@pytest.fixture
def deployed_environment(make_environment):
    return make_environment(
        status="RUNNING",
        kubernetes_namespace="devpocket-u1",
        kubernetes_pod_name="env-e1",
        kubernetes_service_name="svc-e1",
        external_url="http://svc-e1.devpocket-u1.svc.cluster.local:8000",
    )


@pytest.fixture
def mock_store():
    """EnvironmentStore with every method mocked."""
    from devpocket.services.store import EnvironmentStore

    store = AsyncMock(spec=EnvironmentStore)
    store.get_environment.return_value = None
    store.get_owned_environment.return_value = None
    store.get_user.return_value = None
    store.get_cluster.return_value = None
    return store


@pytest.fixture
def mock_handle():
    """ClientHandle whose facades are plain Mocks (called through asyncio.to_thread)."""
    handle = Mock()
    handle.cluster_id = "c1"
    handle.core = Mock()
    handle.workloads = Mock()
    handle.batch = Mock()
    handle.custom_objects.return_value = Mock()
    return handle


@pytest.fixture
def mock_resolver(mock_handle):
    resolver = Mock()
    resolver.get_client = AsyncMock(return_value=mock_handle)
    return resolver


@pytest.fixture
def no_sleep():
    """Awaitable sleep that records requested delays without waiting."""
    return AsyncMock(return_value=None)


@pytest.fixture
def orchestrator_context(mock_store, mock_resolver, settings, no_sleep):
    """OrchestratorContext wired to the mocked store and cluster client."""
    from devpocket.services.orchestration.context import OrchestratorContext

    context = OrchestratorContext(mock_store, settings=settings, sleep=no_sleep)
    context.resolver = mock_resolver
    context.provisioner.resolver = mock_resolver
    context.lifecycle.resolver = mock_resolver
    context.executor.resolver = mock_resolver
    return context
