"""
Environment Provisioner

Creates the cluster objects behind an environment, in order:

    namespace -> PVC -> startup ConfigMap -> Pod -> Service

The Pod mounts both the PVC and the ConfigMap, so they must exist first.
Every step goes through the retry executor, and an object that already
exists (409) counts as created, so re-running the whole pipeline after a
partial failure is safe. Nothing is rolled back on failure: the error is
recorded on the environment and the caller decides whether to retry or
delete.
"""

import asyncio
import json
import logging
import traceback
from typing import Any, Awaitable, Callable, Optional

from kubernetes.client.rest import ApiException

from ...utils.resource_naming import (
    get_configmap_name,
    get_internal_url,
    get_namespace_name,
    get_pod_name,
    get_pvc_name,
    get_service_name,
)
from ...utils.sanitize import sanitize_message
from ..store import EnvironmentStore
from . import manifests
from .credentials import ClientHandle, ClusterCredentialResolver
from .errors import EnvironmentNotFound, InvalidTransition, OrchestrationError
from .retry import retry_operation
from .state import EnvironmentInfo, EnvironmentStatus, can_transition

logger = logging.getLogger(__name__)


def build_error_record(error: BaseException) -> str:
    """Serialize a failure for Environment.last_error."""
    stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
    return json.dumps({
        "name": type(error).__name__,
        "message": sanitize_message(error),
        "stack": sanitize_message(stack),
    })


class EnvironmentProvisioner:
    """Builds the namespace/PVC/ConfigMap/Pod/Service bundle for an environment."""

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

    async def _retry(self, operation, operation_name: str, context: dict):
        return await retry_operation(
            operation,
            operation_name,
            context,
            max_attempts=self.settings.k8s_retry_max_attempts,
            base_delay_ms=self.settings.k8s_retry_base_delay_ms,
            sleep=self._sleep,
        )

    async def create_environment(self, environment_id: str) -> EnvironmentInfo:
        """
        Provision every cluster object for an environment.

        Returns:
            EnvironmentInfo with status PROVISIONING; the pod becomes RUNNING
            once the kubelet starts it.

        Raises:
            EnvironmentNotFound: No such environment record
            InvalidTransition: Environment is not in CREATING or ERROR
            OrchestrationError: Application port equals the ssh port, or any
                pipeline step failed (recorded on the record first)
        """
        environment = await self.store.get_environment(environment_id)
        if environment is None:
            raise EnvironmentNotFound(environment_id)

        if not can_transition(environment.status, EnvironmentStatus.PROVISIONING):
            raise InvalidTransition(environment.status, EnvironmentStatus.PROVISIONING)

        if int(environment.port) == int(self.settings.k8s_ssh_port):
            raise OrchestrationError(
                f"Application port {environment.port} collides with the ssh port",
                details={"environment_id": environment.id},
            )

        namespace = get_namespace_name(environment.user_id)
        pod_name = get_pod_name(environment.id)
        service_name = get_service_name(environment.id)
        pvc_name = get_pvc_name(environment.id)
        configmap_name = get_configmap_name(environment.id)
        context = {"environment_id": environment.id, "namespace": namespace}

        logger.info(f"[K8S] Provisioning environment {environment.id} in {namespace}")

        try:
            handle = await self.resolver.get_client(environment.cluster_id)

            await self._retry(
                lambda: self._ensure_namespace(handle, namespace, environment.user_id),
                "ensure_namespace", context,
            )

            pvc = manifests.create_pvc_manifest(
                name=pvc_name,
                namespace=namespace,
                size=environment.resources_storage,
                storage_class=self.settings.k8s_storage_class,
                access_mode=self.settings.k8s_pvc_access_mode,
            )
            await self._retry(
                lambda: self._create(handle.core.create_namespaced_persistent_volume_claim, namespace, pvc, "PVC"),
                "create_pvc", context,
            )

            configmap = manifests.create_startup_configmap_manifest(
                name=configmap_name,
                namespace=namespace,
                startup_commands=environment.startup_commands or [],
            )
            await self._retry(
                lambda: self._create(handle.core.create_namespaced_config_map, namespace, configmap, "ConfigMap"),
                "create_configmap", context,
            )

            pod = manifests.create_environment_pod_manifest(
                name=pod_name,
                namespace=namespace,
                image=environment.docker_image,
                port=environment.port,
                cpu=environment.resources_cpu,
                memory=environment.resources_memory,
                pvc_name=pvc_name,
                configmap_name=configmap_name,
                environment_variables=environment.environment_variables or {},
                container_name=self.settings.k8s_container_name,
                ssh_port=self.settings.k8s_ssh_port,
            )
            await self._retry(
                lambda: self._create(handle.core.create_namespaced_pod, namespace, pod, "Pod"),
                "create_pod", context,
            )

            service = manifests.create_service_manifest(
                name=service_name,
                namespace=namespace,
                pod_name=pod_name,
                port=environment.port,
                ssh_port=self.settings.k8s_ssh_port,
            )
            await self._retry(
                lambda: self._create(handle.core.create_namespaced_service, namespace, service, "Service"),
                "create_service", context,
            )

        except Exception as e:
            logger.error(
                f"[K8S] Provisioning failed for environment {environment.id}: {sanitize_message(e)}",
                exc_info=True,
            )
            try:
                await self.store.update_environment(
                    environment.id,
                    status=EnvironmentStatus.ERROR,
                    last_error=build_error_record(e),
                )
            except Exception as db_error:
                logger.error(f"Failed to record provisioning error for {environment.id}: {db_error}", exc_info=True)
            raise OrchestrationError(
                f"Failed to provision environment {environment.id}: {sanitize_message(e)}",
                details={"environment_id": environment.id, "error": type(e).__name__},
            ) from e

        external_url = get_internal_url(service_name, namespace, environment.port)
        await self.store.update_environment(
            environment.id,
            status=EnvironmentStatus.PROVISIONING,
            kubernetes_namespace=namespace,
            kubernetes_pod_name=pod_name,
            kubernetes_service_name=service_name,
            external_url=external_url,
            last_error=None,
        )
        logger.info(f"[K8S] ✅ Environment {environment.id} provisioned: {pod_name} in {namespace}")

        return EnvironmentInfo(
            id=environment.id,
            name=environment.name,
            status=EnvironmentStatus.PROVISIONING.value,
            namespace=namespace,
            pod_name=pod_name,
            service_name=service_name,
            external_url=external_url,
        )

    async def _ensure_namespace(self, handle: ClientHandle, namespace: str, user_id: str) -> None:
        try:
            await asyncio.to_thread(handle.core.read_namespace, name=namespace)
            logger.debug(f"[K8S] Namespace {namespace} already exists")
        except ApiException as e:
            if e.status != 404:
                raise
            body = manifests.create_namespace_manifest(namespace, user_id)
            try:
                await asyncio.to_thread(handle.core.create_namespace, body=body)
                logger.info(f"[K8S] ✅ Created namespace: {namespace}")
            except ApiException as create_error:
                if create_error.status != 409:
                    raise

    async def _create(self, create_fn, namespace: str, body, kind: str) -> None:
        name = body.metadata.name
        try:
            await asyncio.to_thread(create_fn, namespace=namespace, body=body)
            logger.info(f"[K8S] ✅ Created {kind}: {name}")
        except ApiException as e:
            if e.status == 409:
                logger.info(f"[K8S] {kind} {name} already exists, skipping")
            else:
                raise
