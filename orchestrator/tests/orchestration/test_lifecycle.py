"""
Tests for the environment lifecycle controller: status, start/stop/restart,
delete and logs.
"""

import pytest
from types import SimpleNamespace
from unittest.mock import Mock

pytest.importorskip("kubernetes")

from kubernetes.client.rest import ApiException

from devpocket.services.orchestration.errors import (
    ClusterUnavailable,
    EnvironmentNotFound,
    InvalidTransition,
    NotDeployed,
    OrchestrationError,
)
from devpocket.services.orchestration.lifecycle import EnvironmentLifecycleController
from devpocket.services.orchestration.state import EnvironmentStatus


@pytest.fixture
def controller(mock_resolver, mock_store, settings, no_sleep):
    return EnvironmentLifecycleController(mock_resolver, mock_store, settings, sleep=no_sleep)


@pytest.fixture
def stored(mock_store, deployed_environment):
    """Store that keeps status updates on the returned record."""
    record = deployed_environment
    mock_store.get_environment.return_value = record

    async def update(environment_id, **values):
        for key, value in values.items():
            setattr(record, key, value)
        return record

    mock_store.update_environment.side_effect = update
    return record


def pod(phase):
    return SimpleNamespace(status=SimpleNamespace(phase=phase))


@pytest.mark.unit
@pytest.mark.kubernetes
class TestGetInfo:

    @pytest.mark.asyncio
    async def test_missing_record_is_not_deployed(self, controller, mock_resolver):
        info = await controller.get_info("missing")

        assert info.status == "NOT_DEPLOYED"
        assert info.name == ""
        mock_resolver.get_client.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_never_deployed_is_not_deployed(self, controller, mock_store, make_environment, mock_resolver):
        mock_store.get_environment.return_value = make_environment()

        info = await controller.get_info("e1")

        assert info.status == "NOT_DEPLOYED"
        assert info.name == "Python Sandbox"
        mock_resolver.get_client.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("phase,status", [
        ("Running", "RUNNING"),
        ("Pending", "PROVISIONING"),
        ("Failed", "ERROR"),
        ("Succeeded", "STOPPED"),
        ("Unknown", "UNKNOWN"),
    ])
    async def test_pod_phase_is_mapped(self, controller, stored, mock_handle, phase, status):
        mock_handle.core.read_namespaced_pod.return_value = pod(phase)
        mock_handle.custom_objects.return_value.get_namespaced_custom_object.side_effect = ApiException(status=404)

        info = await controller.get_info("e1")

        assert info.status == status
        assert info.pod_phase == phase
        assert info.namespace == "devpocket-u1"
        assert info.external_url == "http://svc-e1.devpocket-u1.svc.cluster.local:8000"
        assert info.cpu_usage is None

    @pytest.mark.asyncio
    async def test_usage_summed_over_containers(self, controller, stored, mock_handle):
        mock_handle.core.read_namespaced_pod.return_value = pod("Running")
        mock_handle.custom_objects.return_value.get_namespaced_custom_object.return_value = {
            "containers": [
                {"name": "devpocket", "usage": {"cpu": "250m", "memory": "512Mi"}},
                {"name": "sidecar", "usage": {"cpu": "50m", "memory": "64Mi"}},
            ]
        }

        info = await controller.get_info("e1")

        assert info.cpu_usage == pytest.approx(0.3)
        assert info.memory_usage == 576 * 1024 * 1024

    @pytest.mark.asyncio
    async def test_metrics_failure_does_not_fail_status(self, controller, stored, mock_handle):
        mock_handle.core.read_namespaced_pod.return_value = pod("Running")
        mock_handle.custom_objects.return_value.get_namespaced_custom_object.side_effect = ApiException(status=500)

        info = await controller.get_info("e1")

        assert info.status == "RUNNING"
        assert info.memory_usage is None

    @pytest.mark.asyncio
    async def test_missing_pod_is_stopped(self, controller, stored, mock_handle):
        mock_handle.core.read_namespaced_pod.side_effect = ApiException(status=404, reason="Not Found")

        info = await controller.get_info("e1")

        assert info.status == "STOPPED"
        assert info.message == "Pod not found"

    @pytest.mark.asyncio
    async def test_api_error_is_reported_not_raised(self, controller, stored, mock_handle):
        mock_handle.core.read_namespaced_pod.side_effect = ApiException(status=500, reason="Internal Error")

        info = await controller.get_info("e1")

        assert info.status == "ERROR"

    @pytest.mark.asyncio
    async def test_unreachable_cluster_is_reported_not_raised(self, controller, stored, mock_resolver):
        mock_resolver.get_client.side_effect = ClusterUnavailable("Cluster c1 not found")

        info = await controller.get_info("e1")

        assert info.status == "ERROR"
        assert info.message == "Cluster unavailable"

    @pytest.mark.asyncio
    async def test_store_failure_is_reported_not_raised(self, controller, mock_store):
        mock_store.get_environment.side_effect = RuntimeError("db down")

        info = await controller.get_info("e1")

        assert info.status == "ERROR"


@pytest.mark.unit
@pytest.mark.kubernetes
class TestStartStopRestart:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("action", ["start", "stop", "restart"])
    async def test_requires_deployment(self, controller, mock_store, make_environment, mock_resolver, action):
        mock_store.get_environment.return_value = make_environment()

        with pytest.raises(NotDeployed):
            await getattr(controller, action)("e1")

        mock_resolver.get_client.assert_not_awaited()
        mock_store.update_environment.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_environment(self, controller):
        with pytest.raises(EnvironmentNotFound):
            await controller.start("missing")

    @pytest.mark.asyncio
    async def test_stop_deletes_pod_and_marks_stopping(self, controller, stored, mock_handle):
        await controller.stop("e1")

        mock_handle.core.delete_namespaced_pod.assert_called_once_with(name="env-e1", namespace="devpocket-u1")
        assert stored.status == EnvironmentStatus.STOPPING

    @pytest.mark.asyncio
    async def test_stop_freshly_provisioned(self, controller, stored, mock_handle):
        stored.status = "PROVISIONING"

        await controller.stop("e1")

        mock_handle.core.delete_namespaced_pod.assert_called_once()
        assert stored.status == EnvironmentStatus.STOPPING

    @pytest.mark.asyncio
    async def test_restart_freshly_provisioned(self, controller, stored, mock_handle):
        stored.status = "PROVISIONING"

        await controller.restart("e1")
        assert stored.status == EnvironmentStatus.RESTARTING

        await controller.wait_for_restarts()

        assert stored.status == EnvironmentStatus.RUNNING

    @pytest.mark.asyncio
    async def test_start_from_stopped(self, controller, stored, mock_handle):
        stored.status = "STOPPED"

        await controller.start("e1")

        mock_handle.core.delete_namespaced_pod.assert_called_once()
        assert stored.status == EnvironmentStatus.RUNNING

    @pytest.mark.asyncio
    async def test_start_tolerates_already_deleted_pod(self, controller, stored, mock_handle):
        stored.status = "STOPPED"
        mock_handle.core.delete_namespaced_pod.side_effect = ApiException(status=404)

        await controller.start("e1")

        assert stored.status == EnvironmentStatus.RUNNING

    @pytest.mark.asyncio
    async def test_start_when_running_is_invalid(self, controller, stored, mock_handle):
        with pytest.raises(InvalidTransition):
            await controller.start("e1")

        mock_handle.core.delete_namespaced_pod.assert_not_called()

    @pytest.mark.asyncio
    async def test_stop_when_stopped_is_invalid(self, controller, stored):
        stored.status = "STOPPED"

        with pytest.raises(InvalidTransition):
            await controller.stop("e1")

    @pytest.mark.asyncio
    async def test_pod_delete_failure_leaves_status(self, controller, stored, mock_handle):
        mock_handle.core.delete_namespaced_pod.side_effect = ApiException(status=403, reason="Forbidden")

        with pytest.raises(OrchestrationError):
            await controller.stop("e1")

        assert stored.status == "RUNNING"

    @pytest.mark.asyncio
    async def test_restart_then_delayed_start(self, controller, stored, mock_handle, no_sleep, settings):
        await controller.restart("e1")
        assert stored.status == EnvironmentStatus.RESTARTING

        await controller.wait_for_restarts()

        no_sleep.assert_any_await(settings.restart_delay_seconds)
        assert mock_handle.core.delete_namespaced_pod.call_count == 2
        assert stored.status == EnvironmentStatus.RUNNING

    @pytest.mark.asyncio
    async def test_delayed_start_failure_is_contained(self, controller, stored, mock_handle):
        mock_handle.core.delete_namespaced_pod.side_effect = [None, ApiException(status=403, reason="Forbidden")]

        await controller.restart("e1")
        await controller.wait_for_restarts()

        assert stored.status == EnvironmentStatus.RESTARTING

    @pytest.mark.asyncio
    async def test_cancel_restarts(self, controller, stored, mock_handle):
        await controller.restart("e1")
        controller.cancel_restarts()

        await controller.wait_for_restarts()

        assert mock_handle.core.delete_namespaced_pod.call_count == 1


@pytest.mark.unit
@pytest.mark.kubernetes
class TestDelete:

    @pytest.mark.asyncio
    async def test_deletes_all_resources_and_terminates(self, controller, stored, mock_handle, mock_store):
        await controller.delete("e1")

        core = mock_handle.core
        core.delete_namespaced_pod.assert_called_once_with(name="env-e1", namespace="devpocket-u1")
        core.delete_namespaced_service.assert_called_once_with(name="svc-e1", namespace="devpocket-u1")
        core.delete_namespaced_persistent_volume_claim.assert_called_once_with(name="pvc-e1", namespace="devpocket-u1")
        core.delete_namespaced_config_map.assert_called_once_with(name="config-e1", namespace="devpocket-u1")
        assert stored.status == EnvironmentStatus.TERMINATED
        mock_store.terminate_terminal_sessions.assert_awaited_once_with("e1")

    @pytest.mark.asyncio
    async def test_one_failure_does_not_block_the_others(self, controller, stored, mock_handle):
        mock_handle.core.delete_namespaced_service.side_effect = ApiException(status=500, reason="boom")

        await controller.delete("e1")

        mock_handle.core.delete_namespaced_pod.assert_called_once()
        mock_handle.core.delete_namespaced_persistent_volume_claim.assert_called_once()
        mock_handle.core.delete_namespaced_config_map.assert_called_once()
        assert stored.status == EnvironmentStatus.TERMINATED

    @pytest.mark.asyncio
    async def test_missing_resources_are_ignored(self, controller, stored, mock_handle):
        mock_handle.core.delete_namespaced_pod.side_effect = ApiException(status=404)
        mock_handle.core.delete_namespaced_persistent_volume_claim.side_effect = ApiException(status=404)

        await controller.delete("e1")

        assert stored.status == EnvironmentStatus.TERMINATED

    @pytest.mark.asyncio
    async def test_unreachable_cluster_still_terminates(self, controller, stored, mock_resolver):
        mock_resolver.get_client.side_effect = ClusterUnavailable("Cluster c1 is not active")

        await controller.delete("e1")

        assert stored.status == EnvironmentStatus.TERMINATED

    @pytest.mark.asyncio
    async def test_partial_provision_is_cleaned_up_by_name(self, controller, mock_store, make_environment, mock_handle):
        mock_store.get_environment.return_value = make_environment(status="ERROR")

        await controller.delete("e1")

        mock_handle.core.delete_namespaced_pod.assert_called_once_with(name="env-e1", namespace="devpocket-u1")
        mock_store.update_environment.assert_awaited_once_with("e1", status=EnvironmentStatus.TERMINATED)

    @pytest.mark.asyncio
    async def test_already_terminated_is_noop(self, controller, stored, mock_resolver, mock_store):
        stored.status = "TERMINATED"

        await controller.delete("e1")

        mock_resolver.get_client.assert_not_awaited()
        mock_store.update_environment.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_environment(self, controller):
        with pytest.raises(EnvironmentNotFound):
            await controller.delete("missing")


@pytest.mark.unit
@pytest.mark.kubernetes
class TestLogs:

    @pytest.mark.asyncio
    async def test_default_tail(self, controller, stored, mock_handle, settings):
        mock_handle.core.read_namespaced_pod_log.return_value = "line 1\nline 2\n"

        logs = await controller.get_logs("e1")

        assert logs == "line 1\nline 2\n"
        mock_handle.core.read_namespaced_pod_log.assert_called_once_with(
            name="env-e1",
            namespace="devpocket-u1",
            container="devpocket",
            tail_lines=settings.logs_default_tail_lines,
        )

    @pytest.mark.asyncio
    async def test_explicit_tail(self, controller, stored, mock_handle):
        mock_handle.core.read_namespaced_pod_log.return_value = ""

        await controller.get_logs("e1", tail_lines=10)

        assert mock_handle.core.read_namespaced_pod_log.call_args.kwargs["tail_lines"] == 10

    @pytest.mark.asyncio
    async def test_not_deployed(self, controller, mock_store, make_environment):
        mock_store.get_environment.return_value = make_environment()

        with pytest.raises(NotDeployed):
            await controller.get_logs("e1")

    @pytest.mark.asyncio
    async def test_cluster_error_is_wrapped(self, controller, stored, mock_handle):
        mock_handle.core.read_namespaced_pod_log.side_effect = ApiException(status=400, reason="container not ready")

        with pytest.raises(OrchestrationError):
            await controller.get_logs("e1")

    @pytest.mark.asyncio
    async def test_stream_logs(self, controller, stored, mock_handle):
        response = Mock()
        response.stream.return_value = iter([b"hello\n", b"world\n"])
        mock_handle.core.read_namespaced_pod_log.return_value = response

        chunks = [chunk async for chunk in controller.stream_logs("e1")]

        assert chunks == ["hello\n", "world\n"]
        assert mock_handle.core.read_namespaced_pod_log.call_args.kwargs["follow"] is True
        response.release_conn.assert_called_once()
