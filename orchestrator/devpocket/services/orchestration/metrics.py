"""
Pod resource usage from the metrics.k8s.io API (metrics-server).

Usage is optional: clusters without metrics-server return 404 and the
environment simply reports no samples.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from kubernetes.client.rest import ApiException
from kubernetes.utils import parse_quantity

from .credentials import ClientHandle

logger = logging.getLogger(__name__)

METRICS_GROUP = "metrics.k8s.io"
METRICS_VERSION = "v1beta1"


@dataclass
class PodUsage:
    cpu_cores: float
    memory_bytes: int


async def get_pod_usage(handle: ClientHandle, namespace: str, pod_name: str) -> Optional[PodUsage]:
    """
    Sum CPU and memory usage across the pod's containers.

    Returns:
        PodUsage, or None when metrics are unavailable for the pod
    """
    try:
        sample = await asyncio.to_thread(
            handle.custom_objects().get_namespaced_custom_object,
            group=METRICS_GROUP,
            version=METRICS_VERSION,
            namespace=namespace,
            plural="pods",
            name=pod_name,
        )
    except ApiException as e:
        if e.status in (404, 503):
            logger.debug(f"[K8S] No metrics for pod {pod_name} (status {e.status})")
            return None
        raise

    cpu = 0
    memory = 0
    for container in sample.get("containers", []):
        usage = container.get("usage", {})
        if "cpu" in usage:
            cpu += parse_quantity(usage["cpu"])
        if "memory" in usage:
            memory += parse_quantity(usage["memory"])

    return PodUsage(cpu_cores=float(cpu), memory_bytes=int(memory))
