import subprocess
from dataclasses import replace

import pytest

from argocd_manager import (
    KubectlClient,
    LifecycleController,
    ManagerConfig,
    ProcessHandle,
)


class FakeWorld:
    """In-memory stand-in for kind, the cluster and the local process table."""

    def __init__(self):
        self.clusters = set()
        self.namespaces = set()
        self.installed = False
        self.replicas = 0
        self.statefulset = False
        self.tunnel = None
        self.ready = True
        self.tunnel_starts = True
        self.password = b"s3cr3t-password"
        self.exports = {}
        self.fail_next_apply = False
        self.calls = []
        self.logins = []
        self.terminating_pods = False

    @property
    def cluster_up(self):
        return "argocd-local" in self.clusters

    @property
    def server_running(self):
        return self.cluster_up and self.installed and self.replicas > 0

    def mutating_calls(self):
        return [call for call in self.calls if call[0] != "query"]

    def put_in_cluster_absent(self):
        pass

    def put_in_not_installed(self):
        self.clusters.add("argocd-local")

    def put_in_pods_down(self):
        self.put_in_not_installed()
        self.namespaces.add("argocd")
        self.installed = True
        self.statefulset = True

    def put_in_no_access(self):
        self.put_in_pods_down()
        self.replicas = 1

    def put_in_running(self):
        self.put_in_no_access()
        self.tunnel = ProcessHandle(4242, "kubectl port-forward svc/argocd-server -n argocd 8080:443")


class FakeCluster:
    def __init__(self, world):
        self.world = world

    def list(self):
        return sorted(self.world.clusters)

    def create(self, name, config_path):
        self.world.calls.append(("create_cluster", name))
        self.world.clusters.add(name)

    def delete(self, name):
        self.world.calls.append(("delete_cluster", name))
        self.world.clusters.discard(name)
        self.world.namespaces.clear()
        self.world.installed = False
        self.world.replicas = 0
        self.world.statefulset = False


class FakeKubectl:
    def __init__(self, world):
        self.world = world

    def set_context(self, name):
        self.world.calls.append(("set_context", name))

    def create_namespace(self, name):
        self.world.calls.append(("create_namespace", name))
        self.world.namespaces.add(name)

    def namespace_exists(self, name):
        return self.world.cluster_up and name in self.world.namespaces

    def apply_manifest(self, document=None, url=None, path=None, namespace=None):
        self.world.calls.append(("apply", url or (path and path.name) or document))
        if self.world.fail_next_apply:
            self.world.fail_next_apply = False
            raise subprocess.CalledProcessError(1, ["kubectl", "apply"], stderr="connection refused")
        if url:
            # Re-applying keeps scaled-down replica counts, like kubectl apply does.
            if not self.world.installed:
                self.world.replicas = 1
            self.world.installed = True
            self.world.statefulset = True

    def wait_for_available(self, resource, namespace, timeout):
        self.world.calls.append(("query", "wait", resource))
        return self.world.ready

    def get_pods(self, namespace, selector=None):
        if self.world.server_running:
            return [{"metadata": {"name": "argocd-server-7d9f"}, "status": {"phase": "Running"}}]
        if self.world.terminating_pods and self.world.cluster_up and self.world.installed:
            # Scaled down, but the old pod is still shutting down.
            metadata = {"name": "argocd-server-7d9f", "deletionTimestamp": "2025-01-01T12:00:00Z"}
            return [{"metadata": metadata, "status": {"phase": "Running"}}]
        return []

    def pods_table(self, namespace):
        return "NAME   READY   STATUS\n"

    def scale_deployments(self, names, namespace, replicas, check=True):
        self.world.calls.append(("scale", replicas))
        self.world.replicas = replicas

    def delete_resource(self, kind, name, namespace, check=True):
        self.world.calls.append(("delete", kind, name))
        if kind == "statefulset":
            self.world.statefulset = False

    def resource_exists(self, kind, name, namespace):
        return self.world.statefulset

    def create_secret(self, name, namespace, literals):
        self.world.calls.append(("create_secret", name, dict(literals)))

    def get_secret(self, name, namespace, key):
        return self.world.password

    def rollout_restart(self, namespace):
        self.world.calls.append(("rollout_restart", namespace))

    def stream_logs(self, resource, namespace, tail):
        self.world.calls.append(("query", "logs", resource, tail))
        return 0

    def export_resource(self, kind, namespace, name=None):
        return self.world.exports.get((kind, name))

    def tunnel_command(self, namespace, port):
        return KubectlClient("kind-argocd-local").tunnel_command(namespace, port)


class FakeArgocd:
    def __init__(self, world):
        self.world = world

    def login(self, host, username, password, insecure=True):
        self.world.logins.append((host, username, password))
        return True

    def list_applications(self):
        return "NAME  CLUSTER  NAMESPACE\n"

    def sync_application(self, name):
        self.world.calls.append(("sync", name))


class FakeProcesses:
    def __init__(self, world):
        self.world = world

    def find_all(self, signature):
        tunnel = self.world.tunnel
        return [tunnel] if tunnel and signature in tunnel.cmdline else []

    def find_by_signature(self, signature):
        handles = self.find_all(signature)
        return handles[0] if handles else None

    def launch(self, command):
        self.world.calls.append(("launch", " ".join(command)))
        if self.world.tunnel_starts and self.world.server_running:
            self.world.tunnel = ProcessHandle(4242, " ".join(command))
        return 4242

    def terminate(self, handle, timeout=5):
        self.world.calls.append(("terminate", handle.pid))
        self.world.tunnel = None
        return True


def make_controller(config, world, sleeps=None):
    def sleep(seconds):
        if sleeps is not None:
            sleeps.append(seconds)

    return LifecycleController(
        config,
        cluster=FakeCluster(world),
        kubectl=FakeKubectl(world),
        argocd=FakeArgocd(world),
        processes=FakeProcesses(world),
        sleep=sleep,
    )


@pytest.fixture
def world() -> FakeWorld:
    return FakeWorld()


@pytest.fixture
def config(tmp_path) -> ManagerConfig:
    return ManagerConfig(
        config_dir=tmp_path / "argocd-config",
        kind_config_path=tmp_path / "kind-config.yaml",
    )


@pytest.fixture
def sleeps() -> list:
    return []


@pytest.fixture
def controller(config, world, sleeps) -> LifecycleController:
    return make_controller(config, world, sleeps)


@pytest.fixture
def controller_factory(world, tmp_path):
    """Build controllers the way main() does, but over the fake world."""
    built = []

    def factory(config):
        config = replace(config, kind_config_path=tmp_path / "kind-config.yaml")
        built.append(config)
        return make_controller(config, world)

    factory.built = built
    return factory
