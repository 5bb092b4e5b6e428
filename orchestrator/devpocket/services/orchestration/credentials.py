"""
Cluster Credential Resolver

Builds one kubernetes API client per cluster id and keeps it for the life of
the process. Two ways in:

1. In-cluster: the service-account token, namespace and CA files are mounted
   into the pod. Used when all three are present and loading succeeds.
2. External: the kubeconfig stored on the Cluster row. Normally
   Fernet-encrypted; older rows hold plain YAML, which is accepted only if it
   looks like a real kubeconfig.

Each handle carries its own ``kubernetes.client.Configuration`` rather than
mutating the library's global default, so clusters never share credentials.
"""

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import yaml
from kubernetes import client, config
from kubernetes.config.config_exception import ConfigException

from ..encryption import EncryptionError, KubeconfigEncryptionService, get_encryption_service
from ..store import EnvironmentStore
from .errors import ClusterUnavailable, ConfigurationError, OrchestratorError
from .state import ClusterStatus

logger = logging.getLogger(__name__)

SERVICE_ACCOUNT_FILES = ("token", "namespace", "ca.crt")
IN_CLUSTER_CONTEXT = "in-cluster"

# Substrings a legacy plaintext kubeconfig must contain
REQUIRED_KUBECONFIG_KEYS = ("apiVersion", "clusters", "contexts")


class AuthMethod:
    IN_CLUSTER = "in-cluster"
    KUBECONFIG = "kubeconfig"


@dataclass
class ClientHandle:
    """Cached API facades for one cluster."""

    cluster_id: str
    configuration: client.Configuration
    api_client: client.ApiClient
    core: client.CoreV1Api
    workloads: client.AppsV1Api
    batch: client.BatchV1Api
    auth_method: str
    contexts: List[str] = field(default_factory=list)

    def stream_client(self) -> client.CoreV1Api:
        """
        Fresh CoreV1Api for exec/attach streams.

        ``kubernetes.stream.stream`` patches the request method of the client it
        is given to speak WebSocket; a shared client would break concurrent
        regular calls.
        """
        return client.CoreV1Api(client.ApiClient(configuration=self.configuration))

    def custom_objects(self) -> client.CustomObjectsApi:
        return client.CustomObjectsApi(self.api_client)


def is_running_in_cluster(service_account_dir: str) -> bool:
    """True only if every service-account file is present; any filesystem error means no."""
    try:
        return all(
            os.path.isfile(os.path.join(service_account_dir, name))
            for name in SERVICE_ACCOUNT_FILES
        )
    except OSError:
        return False


def validate_plaintext_kubeconfig(raw: str) -> dict:
    """
    Accept an unencrypted blob only if it is structurally a kubeconfig.

    Returns:
        The parsed document

    Raises:
        ConfigurationError: If any check fails
    """
    if not raw or not all(key in raw for key in REQUIRED_KUBECONFIG_KEYS):
        raise ConfigurationError("Stored kubeconfig is neither encrypted nor a valid kubeconfig")

    try:
        document = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigurationError("Stored kubeconfig is not valid YAML") from e

    if not isinstance(document, dict) or document.get("kind") != "Config":
        raise ConfigurationError("Stored kubeconfig is not of kind Config")

    return document


class ClusterCredentialResolver:
    """Resolve and cache a ClientHandle per cluster id."""

    def __init__(
        self,
        store: EnvironmentStore,
        service_account_dir: str,
        encryption_service: Optional[KubeconfigEncryptionService] = None,
    ):
        self.store = store
        self.service_account_dir = service_account_dir
        self._encryption_service = encryption_service
        self._handles: Dict[str, ClientHandle] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def encryption_service(self) -> KubeconfigEncryptionService:
        if self._encryption_service is None:
            self._encryption_service = get_encryption_service()
        return self._encryption_service

    def cached(self, cluster_id: str) -> Optional[ClientHandle]:
        return self._handles.get(cluster_id)

    def invalidate(self, cluster_id: str) -> bool:
        """Forget the cached handle for a cluster (after credential rotation)."""
        handle = self._handles.pop(cluster_id, None)
        if handle is not None:
            logger.info(f"[K8S] Dropped cached client for cluster {cluster_id}")
        return handle is not None

    def clear(self) -> None:
        self._handles.clear()
        self._locks.clear()

    async def get_client(self, cluster_id: str) -> ClientHandle:
        """
        Return the cached handle for ``cluster_id``, building it on first use.

        Concurrent first callers for the same cluster wait on one build.

        Raises:
            ClusterUnavailable: Cluster missing, inactive or unreachable
            ConfigurationError: Credential malformed or without contexts
        """
        handle = self._handles.get(cluster_id)
        if handle is not None:
            return handle

        lock = self._locks.setdefault(cluster_id, asyncio.Lock())
        async with lock:
            handle = self._handles.get(cluster_id)
            if handle is not None:
                return handle

            try:
                handle = await self._build_handle(cluster_id)
            except OrchestratorError:
                raise
            except Exception as e:
                logger.error(f"[K8S] Failed to initialize client for cluster {cluster_id}: {e}", exc_info=True)
                raise ClusterUnavailable(f"Cannot initialize client for cluster {cluster_id}") from e

            self._handles[cluster_id] = handle
            logger.info(
                f"[K8S] Client ready for cluster {cluster_id} "
                f"(auth: {handle.auth_method}, contexts: {len(handle.contexts)})"
            )
            return handle

    async def _build_handle(self, cluster_id: str) -> ClientHandle:
        configuration = client.Configuration()
        contexts: List[str] = []
        auth_method = None

        if is_running_in_cluster(self.service_account_dir):
            try:
                config.load_incluster_config(client_configuration=configuration)
                contexts = [IN_CLUSTER_CONTEXT]
                auth_method = AuthMethod.IN_CLUSTER
                logger.info("[K8S] Loaded in-cluster service account configuration")
            except ConfigException as e:
                logger.warning(f"[K8S] In-cluster config failed, falling back to stored kubeconfig: {e}")
                configuration = client.Configuration()

        if auth_method is None:
            contexts = await self._load_external(cluster_id, configuration)
            auth_method = AuthMethod.KUBECONFIG

        if not contexts:
            raise ConfigurationError(f"No contexts available for cluster {cluster_id}")

        # TLS verification is never relaxed, whatever the kubeconfig says
        configuration.verify_ssl = True

        api_client = client.ApiClient(configuration=configuration)
        return ClientHandle(
            cluster_id=cluster_id,
            configuration=configuration,
            api_client=api_client,
            core=client.CoreV1Api(api_client),
            workloads=client.AppsV1Api(api_client),
            batch=client.BatchV1Api(api_client),
            auth_method=auth_method,
            contexts=contexts,
        )

    async def _load_external(self, cluster_id: str, configuration: client.Configuration) -> List[str]:
        cluster = await self.store.get_cluster(cluster_id)
        if cluster is None:
            raise ClusterUnavailable(f"Cluster {cluster_id} not found")
        if cluster.status != ClusterStatus.ACTIVE.value:
            raise ClusterUnavailable(f"Cluster {cluster_id} is not active (status: {cluster.status})")

        try:
            raw = self.encryption_service.decrypt(cluster.kubeconfig)
            try:
                document = yaml.safe_load(raw)
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Decrypted kubeconfig for cluster {cluster_id} is not valid YAML") from e
            if not isinstance(document, dict):
                raise ConfigurationError(f"Decrypted kubeconfig for cluster {cluster_id} is not a mapping")
        except EncryptionError:
            logger.warning(f"[K8S] Kubeconfig for cluster {cluster_id} is not encrypted, validating as plaintext")
            document = validate_plaintext_kubeconfig(cluster.kubeconfig)

        contexts = [c.get("name") for c in (document.get("contexts") or []) if isinstance(c, dict) and c.get("name")]
        if not contexts:
            raise ConfigurationError(f"Kubeconfig for cluster {cluster_id} has no contexts")

        context = document.get("current-context") or contexts[0]
        if context not in contexts:
            context = contexts[0]

        try:
            config.load_kube_config_from_dict(
                document,
                context=context,
                client_configuration=configuration,
                persist_config=False,
            )
        except ConfigException as e:
            raise ConfigurationError(f"Kubeconfig for cluster {cluster_id} could not be loaded") from e

        logger.info(f"[K8S] Loaded kubeconfig for cluster {cluster.name} (context: {context})")
        return contexts
