"""
Kubernetes manifests for a DevPocket environment.

An environment is five objects: the owner's namespace (shared), and per
environment a PVC, a ConfigMap holding the startup script, the Pod that runs
it, and a ClusterIP Service in front of the Pod.
"""

import shlex
from typing import Dict, Iterable, Optional

from kubernetes import client

APP_NAME = "devpocket"
WORKSPACE_USER = "devpocket"
WORKSPACE_HOME = f"/home/{WORKSPACE_USER}"
STARTUP_SCRIPT_KEY = "startup.sh"
STARTUP_MOUNT_PATH = "/config"
TMUX_MAIN_SESSION = "main"

# Label shared by the Pod and the Service selector
ENVIRONMENT_LABEL = "devpocket.io/environment"


# =============================================================================
# Labels
# =============================================================================

def get_standard_labels(component: str, **extra: str) -> Dict[str, str]:
    """
    Get standard labels for environment resources.

    Args:
        component: storage, config, environment or service
        extra: Additional label pairs

    Returns:
        Dict of labels
    """
    labels = {
        "app.kubernetes.io/name": APP_NAME,
        "app.kubernetes.io/component": component,
    }
    labels.update(extra)
    return labels


# =============================================================================
# Namespace
# =============================================================================

def create_namespace_manifest(namespace: str, user_id: str) -> client.V1Namespace:
    return client.V1Namespace(
        metadata=client.V1ObjectMeta(
            name=namespace,
            labels={
                "app.kubernetes.io/name": APP_NAME,
                "app.kubernetes.io/part-of": "devpocket-environments",
                "devpocket.io/user-id": str(user_id),
            }
        )
    )


# =============================================================================
# PVC
# =============================================================================

def create_pvc_manifest(
    name: str,
    namespace: str,
    size: str,
    storage_class: Optional[str] = None,
    access_mode: str = "ReadWriteOnce"
) -> client.V1PersistentVolumeClaim:
    """
    Create the workspace PVC.

    Holds both the workspace and the tmux state; the Pod mounts it twice.
    """
    return client.V1PersistentVolumeClaim(
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            labels=get_standard_labels("storage")
        ),
        spec=client.V1PersistentVolumeClaimSpec(
            storage_class_name=storage_class,
            access_modes=[access_mode],
            resources=client.V1ResourceRequirements(
                requests={"storage": size}
            )
        )
    )


# =============================================================================
# Startup script ConfigMap
# =============================================================================

def generate_startup_script(startup_commands: Iterable[str] = ()) -> str:
    """
    Build the container entrypoint.

    Runs as root: creates the workspace user, makes sure tmux is installed,
    runs the template's setup commands in order, starts a detached tmux
    session as the workspace user, then blocks so the container stays up.
    """
    lines = [
        "#!/bin/bash",
        "set -e",
        "",
        f"useradd -m -s /bin/bash {WORKSPACE_USER} || true",
        f"mkdir -p {WORKSPACE_HOME}/.tmux",
        f"chown -R {WORKSPACE_USER}:{WORKSPACE_USER} {WORKSPACE_HOME}",
        "",
        "which tmux || (apt-get update && apt-get install -y tmux)",
        "",
    ]

    for command in startup_commands or ():
        command = command.strip()
        if not command:
            continue
        lines.append(f"echo {shlex.quote('Running: ' + command)} && {command}")

    lines += [
        "",
        f'su - {WORKSPACE_USER} -c "tmux new-session -d -s {TMUX_MAIN_SESSION}"',
        "",
        "tail -f /dev/null",
        "",
    ]
    return "\n".join(lines)


def create_startup_configmap_manifest(
    name: str,
    namespace: str,
    startup_commands: Iterable[str] = ()
) -> client.V1ConfigMap:
    return client.V1ConfigMap(
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            labels=get_standard_labels("config")
        ),
        data={STARTUP_SCRIPT_KEY: generate_startup_script(startup_commands)}
    )


# =============================================================================
# Pod
# =============================================================================

def create_environment_pod_manifest(
    name: str,
    namespace: str,
    image: str,
    port: int,
    cpu: str,
    memory: str,
    pvc_name: str,
    configmap_name: str,
    environment_variables: Optional[Dict[str, str]] = None,
    container_name: str = APP_NAME,
    ssh_port: int = 22
) -> client.V1Pod:
    """
    Create the environment Pod.

    Requests equal limits so the pod gets Guaranteed QoS. The container starts
    as root because the startup script creates the workspace user before
    dropping into it.

    Args:
        name: Pod name (env-<environment id>)
        namespace: Owner namespace
        image: Container image from the template
        port: Application port
        cpu: CPU quantity, used for both request and limit
        memory: Memory quantity, used for both request and limit
        pvc_name: Workspace PVC
        configmap_name: ConfigMap holding startup.sh
        environment_variables: Extra container env
        container_name: Name of the single container
        ssh_port: Second exposed port

    Returns:
        V1Pod manifest
    """
    resources = {"cpu": cpu, "memory": memory}

    container = client.V1Container(
        name=container_name,
        image=image,
        command=["/bin/bash", f"{STARTUP_MOUNT_PATH}/{STARTUP_SCRIPT_KEY}"],
        ports=[
            client.V1ContainerPort(container_port=port, name="app-port"),
            client.V1ContainerPort(container_port=ssh_port, name="ssh"),
        ],
        env=[
            client.V1EnvVar(name=key, value=str(value))
            for key, value in (environment_variables or {}).items()
        ],
        resources=client.V1ResourceRequirements(
            requests=dict(resources),
            limits=dict(resources)
        ),
        volume_mounts=[
            client.V1VolumeMount(name="workspace", mount_path=f"{WORKSPACE_HOME}/workspace"),
            client.V1VolumeMount(name="tmux-data", mount_path=f"{WORKSPACE_HOME}/.tmux"),
            client.V1VolumeMount(name="startup-config", mount_path=STARTUP_MOUNT_PATH),
        ],
        security_context=client.V1SecurityContext(
            run_as_user=0,
            allow_privilege_escalation=True
        )
    )

    return client.V1Pod(
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            labels=get_standard_labels("environment", **{ENVIRONMENT_LABEL: name})
        ),
        spec=client.V1PodSpec(
            containers=[container],
            volumes=[
                client.V1Volume(
                    name="workspace",
                    persistent_volume_claim=client.V1PersistentVolumeClaimVolumeSource(claim_name=pvc_name)
                ),
                client.V1Volume(
                    name="tmux-data",
                    persistent_volume_claim=client.V1PersistentVolumeClaimVolumeSource(claim_name=pvc_name)
                ),
                client.V1Volume(
                    name="startup-config",
                    config_map=client.V1ConfigMapVolumeSource(name=configmap_name, default_mode=0o755)
                ),
            ],
            restart_policy="Always"
        )
    )


# =============================================================================
# Service
# =============================================================================

def create_service_manifest(
    name: str,
    namespace: str,
    pod_name: str,
    port: int,
    ssh_port: int = 22
) -> client.V1Service:
    return client.V1Service(
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            labels=get_standard_labels("service")
        ),
        spec=client.V1ServiceSpec(
            selector={ENVIRONMENT_LABEL: pod_name},
            ports=[
                client.V1ServicePort(port=port, target_port=port, name="app-port", protocol="TCP"),
                client.V1ServicePort(port=ssh_port, target_port=ssh_port, name="ssh", protocol="TCP"),
            ],
            type="ClusterIP"
        )
    )
