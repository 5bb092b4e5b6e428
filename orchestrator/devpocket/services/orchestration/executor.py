"""
Command Executor

Runs a shell command inside an environment's workspace container over the
Kubernetes exec API and reports the outcome. It knows environments and
commands only; relaying output to sockets is the session router's job.
"""

import asyncio
import logging
from dataclasses import dataclass, asdict
from typing import Optional

import yaml
from kubernetes.stream import stream
from kubernetes.stream.ws_client import ERROR_CHANNEL

from ...utils.sanitize import sanitize_message
from ..store import EnvironmentStore
from .credentials import ClientHandle, ClusterCredentialResolver

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    success: bool
    output: str = ""
    error: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


class CommandExecutor:
    """Exec a command in the environment pod and collect stdout, stderr and status."""

    def __init__(self, resolver: ClusterCredentialResolver, store: EnvironmentStore, settings):
        self.resolver = resolver
        self.store = store
        self.settings = settings

    async def execute_command(
        self,
        environment_id: str,
        command: str,
        attach_stdin: bool = False
    ) -> CommandResult:
        """
        Run ``/bin/bash -c <command>`` in the workspace container.

        Never raises. An environment without a recorded deployment fails
        without touching the cluster; cluster errors become failed results.
        """
        try:
            environment = await self.store.get_environment(environment_id)
        except Exception as e:
            logger.error(f"Failed to load environment {environment_id}: {e}", exc_info=True)
            return CommandResult(success=False, error="Failed to execute command")

        if environment is None or not (environment.kubernetes_namespace and environment.kubernetes_pod_name):
            return CommandResult(success=False, error="Environment not deployed")

        try:
            handle = await self.resolver.get_client(environment.cluster_id)
            return await asyncio.to_thread(
                self._exec,
                handle,
                environment.kubernetes_pod_name,
                environment.kubernetes_namespace,
                command,
                attach_stdin,
            )
        except Exception as e:
            logger.error(
                f"[K8S:EXEC] Command failed in environment {environment_id}: {sanitize_message(e)}",
                exc_info=True,
            )
            return CommandResult(success=False, error=f"Failed to execute command: {sanitize_message(e)}")

    def _exec(
        self,
        handle: ClientHandle,
        pod_name: str,
        namespace: str,
        command: str,
        attach_stdin: bool
    ) -> CommandResult:
        timeout = self.settings.k8s_exec_timeout_seconds

        resp = stream(
            handle.stream_client().connect_get_namespaced_pod_exec,
            pod_name,
            namespace,
            container=self.settings.k8s_container_name,
            command=["/bin/bash", "-c", command],
            stderr=True,
            stdin=attach_stdin,
            stdout=True,
            tty=False,
            _preload_content=False,
        )

        try:
            resp.run_forever(timeout=timeout)
            # Buffered data only; a blocking read on an open stream never returns
            output = resp.read_stdout(timeout=0) or ""
            error = resp.read_stderr(timeout=0) or ""
            status_doc = resp.read_channel(ERROR_CHANNEL, timeout=0)
            still_open = resp.is_open()
        finally:
            resp.close()

        if still_open and not status_doc:
            return CommandResult(success=False, output=output, error=error or f"Command timed out after {timeout}s")

        status = parse_exec_status(status_doc)
        if status.get("status") == "Success":
            return CommandResult(success=True, output=output, error=error)

        if not error:
            error = status.get("message") or "Command failed"
        return CommandResult(success=False, output=output, error=error)


def parse_exec_status(raw: Optional[str]) -> dict:
    """Parse the v1.Status document sent on the exec error channel."""
    if not raw:
        return {}
    try:
        status = yaml.safe_load(raw)
    except yaml.YAMLError:
        return {}
    return status if isinstance(status, dict) else {}
