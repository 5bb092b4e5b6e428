"""
Unit tests for environment manifest builders and resource naming.
"""

import pytest

pytest.importorskip("kubernetes")

from devpocket.services.orchestration import manifests
from devpocket.utils.resource_naming import (
    get_configmap_name,
    get_internal_url,
    get_namespace_name,
    get_pod_name,
    get_pvc_name,
    get_service_name,
    get_tmux_session_name,
)


@pytest.mark.unit
class TestResourceNaming:

    def test_names_are_derived_from_ids(self):
        assert get_namespace_name("u1") == "devpocket-u1"
        assert get_pod_name("e1") == "env-e1"
        assert get_service_name("e1") == "svc-e1"
        assert get_pvc_name("e1") == "pvc-e1"
        assert get_configmap_name("e1") == "config-e1"
        assert get_tmux_session_name("e1") == "devpocket_e1"

    def test_internal_url(self):
        assert get_internal_url("svc-e1", "devpocket-u1", 8000) == "http://svc-e1.devpocket-u1.svc.cluster.local:8000"


@pytest.mark.unit
@pytest.mark.kubernetes
class TestStartupScript:

    def test_script_order(self):
        script = manifests.generate_startup_script(["pip install ipython", "echo done"])
        lines = script.splitlines()

        assert lines[0] == "#!/bin/bash"
        useradd = next(i for i, l in enumerate(lines) if l.startswith("useradd"))
        tmux_check = next(i for i, l in enumerate(lines) if l.startswith("which tmux"))
        first_cmd = next(i for i, l in enumerate(lines) if l.endswith("&& pip install ipython"))
        second_cmd = next(i for i, l in enumerate(lines) if l.endswith("&& echo done"))
        session = next(i for i, l in enumerate(lines) if "tmux new-session -d -s main" in l)
        block = lines.index("tail -f /dev/null")

        assert useradd < tmux_check < first_cmd < second_cmd < session < block

    def test_tmux_session_runs_as_workspace_user(self):
        script = manifests.generate_startup_script([])
        assert 'su - devpocket -c "tmux new-session -d -s main"' in script

    def test_blank_commands_skipped(self):
        script = manifests.generate_startup_script(["", "   "])
        assert "Running:" not in script


@pytest.mark.unit
@pytest.mark.kubernetes
class TestManifests:

    def test_namespace_labels(self):
        ns = manifests.create_namespace_manifest("devpocket-u1", "u1")
        assert ns.metadata.name == "devpocket-u1"
        assert ns.metadata.labels["app.kubernetes.io/name"] == "devpocket"
        assert ns.metadata.labels["app.kubernetes.io/part-of"] == "devpocket-environments"

    def test_pvc_size_and_access_mode(self):
        pvc = manifests.create_pvc_manifest("pvc-e1", "devpocket-u1", "5Gi")
        assert pvc.spec.resources.requests == {"storage": "5Gi"}
        assert pvc.spec.access_modes == ["ReadWriteOnce"]
        assert pvc.metadata.labels["app.kubernetes.io/component"] == "storage"

    def test_configmap_holds_startup_script(self):
        cm = manifests.create_startup_configmap_manifest("config-e1", "devpocket-u1", ["make"])
        assert set(cm.data) == {"startup.sh"}
        assert "make" in cm.data["startup.sh"]

    def test_pod_spec(self):
        pod = manifests.create_environment_pod_manifest(
            name="env-e1",
            namespace="devpocket-u1",
            image="python:3.11-slim",
            port=8000,
            cpu="500m",
            memory="1Gi",
            pvc_name="pvc-e1",
            configmap_name="config-e1",
            environment_variables={"DEBUG": 1},
        )
        container = pod.spec.containers[0]

        assert container.name == "devpocket"
        assert container.image == "python:3.11-slim"
        assert container.command == ["/bin/bash", "/config/startup.sh"]
        assert [(p.name, p.container_port) for p in container.ports] == [("app-port", 8000), ("ssh", 22)]
        assert container.resources.requests == container.resources.limits == {"cpu": "500m", "memory": "1Gi"}
        assert [(e.name, e.value) for e in container.env] == [("DEBUG", "1")]
        assert container.security_context.run_as_user == 0
        assert pod.spec.restart_policy == "Always"

        mounts = {m.name: m.mount_path for m in container.volume_mounts}
        assert mounts == {
            "workspace": "/home/devpocket/workspace",
            "tmux-data": "/home/devpocket/.tmux",
            "startup-config": "/config",
        }

        volumes = {v.name: v for v in pod.spec.volumes}
        assert volumes["workspace"].persistent_volume_claim.claim_name == "pvc-e1"
        assert volumes["tmux-data"].persistent_volume_claim.claim_name == "pvc-e1"
        assert volumes["startup-config"].config_map.name == "config-e1"
        assert volumes["startup-config"].config_map.default_mode == 0o755

    def test_service_selects_pod(self):
        pod = manifests.create_environment_pod_manifest(
            name="env-e1", namespace="devpocket-u1", image="x", port=8000, cpu="1", memory="1Gi",
            pvc_name="pvc-e1", configmap_name="config-e1",
        )
        svc = manifests.create_service_manifest("svc-e1", "devpocket-u1", "env-e1", 8000)

        assert svc.spec.type == "ClusterIP"
        for key, value in svc.spec.selector.items():
            assert pod.metadata.labels[key] == value
        assert [(p.name, p.port, p.target_port) for p in svc.spec.ports] == [("app-port", 8000, 8000), ("ssh", 22, 22)]
