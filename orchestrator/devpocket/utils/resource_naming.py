"""
Resource naming for environment cluster objects.

Every name is a pure function of the environment id or owner id, so cleanup
never needs a side index of what was created.
"""

from typing import Union
from uuid import UUID

NAME_PREFIX = "devpocket"


def get_namespace_name(user_id: Union[UUID, str]) -> str:
    """
    Get the per-user namespace.

    Examples:
        >>> get_namespace_name("u1")
        "devpocket-u1"
    """
    return f"{NAME_PREFIX}-{str(user_id)}"


def get_pod_name(environment_id: Union[UUID, str]) -> str:
    return f"env-{str(environment_id)}"


def get_service_name(environment_id: Union[UUID, str]) -> str:
    return f"svc-{str(environment_id)}"


def get_pvc_name(environment_id: Union[UUID, str]) -> str:
    return f"pvc-{str(environment_id)}"


def get_configmap_name(environment_id: Union[UUID, str]) -> str:
    return f"config-{str(environment_id)}"


def get_tmux_session_name(environment_id: Union[UUID, str]) -> str:
    return f"{NAME_PREFIX}_{str(environment_id)}"


def get_internal_url(service_name: str, namespace: str, port: int) -> str:
    """
    Get the in-cluster URL of an environment's service.

    Examples:
        >>> get_internal_url("svc-e1", "devpocket-u1", 8000)
        "http://svc-e1.devpocket-u1.svc.cluster.local:8000"
    """
    return f"http://{service_name}.{namespace}.svc.cluster.local:{port}"
