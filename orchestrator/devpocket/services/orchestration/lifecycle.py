"""
Environment Lifecycle Controller

Status, start, stop, restart, delete and logs for an environment that the
provisioner has already built.

start and stop are optimistic: they delete the pod and write the target
status without waiting for the kubelet. A reconciler outside this service
is the source of truth for readiness.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from kubernetes.client.rest import ApiException

from ...utils.resource_naming import (
    get_configmap_name,
    get_namespace_name,
    get_pod_name,
    get_pvc_name,
    get_service_name,
)
from ...utils.sanitize import sanitize_message
from ..store import EnvironmentStore
from .credentials import ClientHandle, ClusterCredentialResolver
from .errors import EnvironmentNotFound, InvalidTransition, NotDeployed, OrchestrationError, OrchestratorError
from .metrics import get_pod_usage
from .retry import retry_operation
from .state import EnvironmentInfo, EnvironmentStatus, ObservedStatus, can_transition, map_pod_phase

logger = logging.getLogger(__name__)


class EnvironmentLifecycleController:
    """Drives an existing environment through its state machine."""

    def __init__(
        self,
        resolver: ClusterCredentialResolver,
        store: EnvironmentStore,
        settings,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        self.resolver = resolver
        self.store = store
        self.settings = settings
        self._sleep = sleep
        self._restart_tasks: Dict[str, asyncio.Task] = {}

    async def _retry(self, operation, operation_name: str, context: dict):
        return await retry_operation(
            operation,
            operation_name,
            context,
            max_attempts=self.settings.k8s_retry_max_attempts,
            base_delay_ms=self.settings.k8s_retry_base_delay_ms,
            sleep=self._sleep,
        )

    async def _load(self, environment_id: str):
        environment = await self.store.get_environment(environment_id)
        if environment is None:
            raise EnvironmentNotFound(environment_id)
        return environment

    async def _load_deployed(self, environment_id: str):
        environment = await self._load(environment_id)
        if not (environment.kubernetes_namespace and environment.kubernetes_pod_name):
            raise NotDeployed(environment_id)
        return environment

    @staticmethod
    def _check_transition(environment, target: EnvironmentStatus) -> None:
        if not can_transition(environment.status, target):
            raise InvalidTransition(environment.status, target)

    # =========================================================================
    # STATUS
    # =========================================================================

    async def get_info(self, environment_id: str) -> EnvironmentInfo:
        """
        Report what the cluster says about an environment.

        Never raises: a missing record or missing deployment is NOT_DEPLOYED,
        and any cluster failure is reported as ERROR.
        """
        try:
            environment = await self.store.get_environment(environment_id)
        except Exception as e:
            logger.error(f"Failed to load environment {environment_id}: {e}", exc_info=True)
            return EnvironmentInfo(id=environment_id, name="", status=ObservedStatus.ERROR.value,
                                   message="Failed to load environment")

        if environment is None or not (environment.kubernetes_namespace and environment.kubernetes_pod_name):
            return EnvironmentInfo(
                id=environment_id,
                name=environment.name if environment is not None else "",
                status=ObservedStatus.NOT_DEPLOYED.value,
            )

        info = EnvironmentInfo(
            id=environment.id,
            name=environment.name,
            status=ObservedStatus.UNKNOWN.value,
            namespace=environment.kubernetes_namespace,
            pod_name=environment.kubernetes_pod_name,
            service_name=environment.kubernetes_service_name,
            external_url=environment.external_url,
        )

        try:
            handle = await self.resolver.get_client(environment.cluster_id)
            pod = await asyncio.to_thread(
                handle.core.read_namespaced_pod,
                name=environment.kubernetes_pod_name,
                namespace=environment.kubernetes_namespace,
            )
        except ApiException as e:
            if e.status == 404:
                # Pod removed by stop and not yet recreated
                info.status = ObservedStatus.STOPPED.value
                info.message = "Pod not found"
                return info
            logger.error(f"[K8S] Failed to read pod for {environment.id}: {sanitize_message(e)}")
            info.status = ObservedStatus.ERROR.value
            info.message = "Failed to read pod status"
            return info
        except Exception as e:
            logger.error(f"[K8S] Failed to get info for {environment.id}: {sanitize_message(e)}", exc_info=True)
            info.status = ObservedStatus.ERROR.value
            info.message = "Cluster unavailable"
            return info

        phase = pod.status.phase if pod.status else None
        info.pod_phase = phase
        info.status = map_pod_phase(phase).value

        try:
            usage = await get_pod_usage(handle, environment.kubernetes_namespace, environment.kubernetes_pod_name)
        except Exception as e:
            logger.warning(f"[K8S] Metrics unavailable for {environment.id}: {sanitize_message(e)}")
            usage = None
        if usage is not None:
            info.cpu_usage = usage.cpu_cores
            info.memory_usage = usage.memory_bytes

        return info

    # =========================================================================
    # START / STOP / RESTART
    # =========================================================================

    async def _delete_pod(self, handle: ClientHandle, namespace: str, pod_name: str, context: dict) -> None:
        async def delete():
            try:
                await asyncio.to_thread(handle.core.delete_namespaced_pod, name=pod_name, namespace=namespace)
                logger.info(f"[K8S] Deleted pod: {pod_name}")
            except ApiException as e:
                if e.status != 404:
                    raise

        await self._retry(delete, "delete_pod", context)

    async def _cycle_pod(self, environment, target: EnvironmentStatus, action: str) -> None:
        context = {"environment_id": environment.id, "namespace": environment.kubernetes_namespace}
        try:
            handle = await self.resolver.get_client(environment.cluster_id)
            await self._delete_pod(handle, environment.kubernetes_namespace, environment.kubernetes_pod_name, context)
        except OrchestratorError:
            raise
        except Exception as e:
            logger.error(f"[K8S] Failed to {action} environment {environment.id}: {sanitize_message(e)}", exc_info=True)
            raise OrchestrationError(f"Failed to {action} environment: {sanitize_message(e)}") from e

        await self.store.update_environment(environment.id, status=target)

    async def start(self, environment_id: str) -> None:
        """Delete the pod so it is recreated, and mark the environment RUNNING."""
        environment = await self._load_deployed(environment_id)
        self._check_transition(environment, EnvironmentStatus.RUNNING)
        await self._cycle_pod(environment, EnvironmentStatus.RUNNING, "start")
        logger.info(f"Environment start initiated: {environment_id}")

    async def stop(self, environment_id: str) -> None:
        environment = await self._load_deployed(environment_id)
        self._check_transition(environment, EnvironmentStatus.STOPPING)
        await self._cycle_pod(environment, EnvironmentStatus.STOPPING, "stop")
        logger.info(f"Environment stop initiated: {environment_id}")

    async def restart(self, environment_id: str) -> None:
        """
        Stop the pod now and start it again after ``restart_delay_seconds``.

        The delayed start runs as a background task; its failures are logged.
        """
        environment = await self._load_deployed(environment_id)
        self._check_transition(environment, EnvironmentStatus.RESTARTING)
        await self._cycle_pod(environment, EnvironmentStatus.RESTARTING, "restart")

        previous = self._restart_tasks.pop(environment_id, None)
        if previous is not None:
            previous.cancel()
        task = asyncio.create_task(self._delayed_start(environment_id))
        self._restart_tasks[environment_id] = task
        task.add_done_callback(lambda t: self._forget_restart(environment_id, t))
        logger.info(f"Environment restart initiated: {environment_id}")

    def _forget_restart(self, environment_id: str, task: asyncio.Task) -> None:
        if self._restart_tasks.get(environment_id) is task:
            del self._restart_tasks[environment_id]

    async def _delayed_start(self, environment_id: str) -> None:
        sleep = self._sleep or asyncio.sleep
        await sleep(self.settings.restart_delay_seconds)
        try:
            await self.start(environment_id)
        except Exception as e:
            logger.error(f"Delayed start after restart failed for {environment_id}: {sanitize_message(e)}", exc_info=True)

    async def wait_for_restarts(self) -> None:
        """Await every pending delayed start (shutdown and tests)."""
        tasks = list(self._restart_tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def cancel_restarts(self) -> None:
        for task in self._restart_tasks.values():
            task.cancel()
        self._restart_tasks.clear()

    # =========================================================================
    # DELETE
    # =========================================================================

    async def delete(self, environment_id: str) -> None:
        """
        Remove the environment's pod, service, PVC and ConfigMap, then mark it TERMINATED.

        Names are derived from the ids, so objects left behind by a failed
        provisioning run are cleaned up too. Individual failures are logged
        and never block the other deletions or the final status.
        """
        environment = await self._load(environment_id)
        if environment.status == EnvironmentStatus.TERMINATED.value:
            logger.info(f"Environment {environment_id} already terminated")
            return

        pending = self._restart_tasks.pop(environment_id, None)
        if pending is not None:
            pending.cancel()

        namespace = environment.kubernetes_namespace or get_namespace_name(environment.user_id)
        pod_name = environment.kubernetes_pod_name or get_pod_name(environment.id)
        service_name = environment.kubernetes_service_name or get_service_name(environment.id)
        context = {"environment_id": environment.id, "namespace": namespace}

        try:
            handle = await self.resolver.get_client(environment.cluster_id)
        except Exception as e:
            logger.error(f"[K8S] Cannot reach cluster to delete {environment.id}: {sanitize_message(e)}")
            handle = None

        if handle is not None:
            core = handle.core
            deletions = [
                ("pod", pod_name, core.delete_namespaced_pod),
                ("service", service_name, core.delete_namespaced_service),
                ("PVC", get_pvc_name(environment.id), core.delete_namespaced_persistent_volume_claim),
                ("ConfigMap", get_configmap_name(environment.id), core.delete_namespaced_config_map),
            ]
            results = await asyncio.gather(
                *(self._delete_resource(fn, name, namespace, kind, context) for kind, name, fn in deletions),
                return_exceptions=True,
            )
            for (kind, name, _), result in zip(deletions, results):
                if isinstance(result, BaseException):
                    logger.warning(f"[K8S] Failed to delete {kind} {name}: {sanitize_message(result)}")

        await self.store.update_environment(environment.id, status=EnvironmentStatus.TERMINATED)
        await self.store.terminate_terminal_sessions(environment.id)
        logger.info(f"Environment deleted: {environment_id}")

    async def _delete_resource(self, delete_fn, name: str, namespace: str, kind: str, context: dict) -> None:
        async def delete():
            try:
                await asyncio.to_thread(delete_fn, name=name, namespace=namespace)
                logger.info(f"[K8S] Deleted {kind}: {name}")
            except ApiException as e:
                if e.status != 404:
                    raise

        await self._retry(delete, f"delete_{kind.lower()}", context)

    # =========================================================================
    # LOGS
    # =========================================================================

    async def get_logs(self, environment_id: str, tail_lines: Optional[int] = None) -> str:
        """Return the last ``tail_lines`` lines of the workspace container log."""
        environment = await self._load_deployed(environment_id)
        tail_lines = tail_lines or self.settings.logs_default_tail_lines

        try:
            handle = await self.resolver.get_client(environment.cluster_id)
            return await asyncio.to_thread(
                handle.core.read_namespaced_pod_log,
                name=environment.kubernetes_pod_name,
                namespace=environment.kubernetes_namespace,
                container=self.settings.k8s_container_name,
                tail_lines=tail_lines,
            )
        except OrchestratorError:
            raise
        except Exception as e:
            logger.error(f"[K8S] Failed to read logs for {environment_id}: {sanitize_message(e)}", exc_info=True)
            raise OrchestrationError(f"Failed to retrieve logs: {sanitize_message(e)}") from e

    async def stream_logs(self, environment_id: str, tail_lines: Optional[int] = None) -> AsyncIterator[str]:
        """Follow the container log, yielding decoded chunks until the pod stops."""
        environment = await self._load_deployed(environment_id)
        tail_lines = tail_lines or self.settings.logs_default_tail_lines
        handle = await self.resolver.get_client(environment.cluster_id)

        response = await asyncio.to_thread(
            handle.core.read_namespaced_pod_log,
            name=environment.kubernetes_pod_name,
            namespace=environment.kubernetes_namespace,
            container=self.settings.k8s_container_name,
            tail_lines=tail_lines,
            follow=True,
            _preload_content=False,
        )
        chunks = response.stream()
        try:
            while True:
                chunk = await asyncio.to_thread(next, chunks, None)
                if chunk is None:
                    break
                yield chunk.decode("utf-8", errors="replace") if isinstance(chunk, bytes) else chunk
        finally:
            response.release_conn()
