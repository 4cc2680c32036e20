#!/bin/python3
"""
ArgoCD Manager - A script to run ArgoCD locally in a kind cluster

This script creates a local kind Kubernetes cluster, installs ArgoCD into it,
keeps a kubectl port-forward to the ArgoCD server alive and prints the admin
credentials. On top of that it can stop, restart and clean the environment,
show status and logs, back up and restore ArgoCD resources and configure
GitHub deployment notifications. Without arguments it opens an interactive menu.
"""

import argparse
import base64
import getpass
import json
import shutil
import subprocess
import sys
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, NamedTuple, Optional

import psutil
import yaml


class Colors(Enum):
    RED = "\033[91m"
    YELLOW = "\033[93m"
    CYAN = "\033[96m"
    GREEN = "\033[92m"
    PURPLE = "\033[95m"
    BOLD = "\033[1m"
    RESET = "\033[0m"


def paint(color: Colors, text: str) -> str:
    """Wrap text in an ANSI colour."""
    return f"{color.value}{text}{Colors.RESET.value}"


def echo_info(message):
    """Print an informational status line."""
    print(f"{paint(Colors.GREEN, '[INFO]')} {message}")


def echo_warn(message):
    """Print a warning status line."""
    print(f"{paint(Colors.YELLOW, '[WARN]')} {message}")


def echo_error(message):
    """Print an error status line to stderr."""
    print(f"{paint(Colors.RED, '[ERROR]')} {message}", file=sys.stderr)


def echo_success(message):
    """Print a success status line."""
    print(f"{paint(Colors.CYAN, '[SUCCESS]')} {message}")


def echo_title(message):
    """Print a section banner."""
    print(paint(Colors.PURPLE, f"=== {message} ==="))


class ArgocdManagerError(Exception):
    """Base exception for argocd-manager errors."""

    pass


class PrerequisiteError(ArgocdManagerError):
    """Required command line tools are not installed."""

    def __init__(self, missing):
        self.missing = list(missing)
        super().__init__(f"Required tools not found: {' '.join(self.missing)}")


class PreconditionError(ArgocdManagerError):
    """The environment is not in a state that allows the operation."""

    pass


class ReadinessTimeout(ArgocdManagerError):
    """ArgoCD workloads did not become available in time."""

    pass


REQUIRED_TOOLS = ("kubectl", "kind", "argocd")

ARGOCD_INSTALL_MANIFEST = (
    "https://raw.githubusercontent.com/argoproj/argo-cd/stable/manifests/install.yaml"
)
INITIAL_ADMIN_SECRET = "argocd-initial-admin-secret"
ADMIN_USERNAME = "admin"
TUNNEL_SIGNATURE = "kubectl port-forward svc/argocd-server"
CONFIG_FILE_NAME = "argocd_manager_config.json"
SNAPSHOT_PREFIX = "backup-"
LITERAL_FLAG = "--from-literal="


@dataclass(frozen=True)
class ManagerConfig:
    """Settings for one managed environment, fixed for the whole run."""

    cluster_name: str = "argocd-local"
    namespace: str = "argocd"
    port: int = 8080
    config_dir: Path = Path("argocd-config")
    kind_config_path: Path = Path("/tmp/kind-config.yaml")
    install_manifest: str = ARGOCD_INSTALL_MANIFEST
    server_selector: str = "app.kubernetes.io/name=argocd-server"
    ready_deployments: tuple = (
        "argocd-server",
        "argocd-repo-server",
        "argocd-dex-server",
    )
    managed_deployments: tuple = (
        "argocd-server",
        "argocd-repo-server",
        "argocd-dex-server",
        "argocd-redis",
        "argocd-notifications-controller",
        "argocd-applicationset-controller",
    )
    controller_statefulset: str = "argocd-application-controller"
    wait_timeout: int = 300
    tunnel_settle_seconds: float = 3
    restart_settle_seconds: float = 2

    @classmethod
    def from_args(cls, args) -> "ManagerConfig":
        return cls(
            cluster_name=args.cluster_name,
            namespace=args.namespace,
            port=args.port,
            config_dir=Path(args.config_dir),
        )

    @property
    def context_name(self) -> str:
        return f"kind-{self.cluster_name}"

    @property
    def host(self) -> str:
        return f"localhost:{self.port}"

    @property
    def url(self) -> str:
        return f"https://{self.host}"

    @property
    def config_file(self) -> Path:
        return self.config_dir / CONFIG_FILE_NAME


def load_config(config_path: Path) -> dict:
    """Load cached answers from a JSON file."""
    if config_path.exists():
        try:
            with open(config_path, "r") as f:
                return json.load(f)
        except json.JSONDecodeError:
            echo_warn(f"Config file {config_path} is corrupted. Starting fresh.")
            return {}
    return {}


def save_config(config_path: Path, data: dict) -> None:
    """Save cached answers to a JSON file."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        json.dump(data, f, indent=4)


def run_command(
    command, check=True, input=None, print_output=False, quiet=False
) -> subprocess.CompletedProcess:
    """Run a command and return the output. quiet suppresses all echoing."""
    if not quiet:
        print(f"Running: {' '.join(command)}")

    result = subprocess.run(
        command, check=check, text=True, capture_output=True, input=input
    )

    if result.stdout and print_output:
        print(result.stdout)
    if result.stderr and not quiet:
        print(result.stderr, file=sys.stderr)

    return result


def stream_command(command) -> int:
    """Run a command attached to the terminal, for output that follows."""
    print(f"Running: {' '.join(command)}")
    return subprocess.run(command, check=False).returncode


def check_prerequisites(tools=REQUIRED_TOOLS) -> None:
    """Raise PrerequisiteError listing every required tool missing from PATH."""
    missing = [tool for tool in tools if shutil.which(tool) is None]
    if missing:
        raise PrerequisiteError(missing)


def redact_command(command) -> str:
    """Join a command for display, hiding literal secret values."""
    parts = command if isinstance(command, list) else str(command).split(" ")
    redacted = []
    for part in parts:
        part = str(part)
        if part.startswith(LITERAL_FLAG) and "=" in part[len(LITERAL_FLAG) :]:
            key = part[len(LITERAL_FLAG) :].split("=", 1)[0]
            part = f"{LITERAL_FLAG}{key}=***"
        redacted.append(part)
    return " ".join(redacted)


def describe_failure(error: Exception) -> str:
    """Turn an error into a message for the user, with secrets redacted."""
    if isinstance(error, subprocess.CalledProcessError):
        detail = (error.stderr or "").strip()
        command = redact_command(error.cmd)
        message = f"Command failed with exit status {error.returncode}: {command}"
        return f"{message}\n{detail}" if detail else message
    return str(error)


class _BlockDumper(yaml.SafeDumper):
    pass


def _represent_str(dumper, data):
    style = "|" if "\n" in data else None
    return dumper.represent_scalar("tag:yaml.org,2002:str", data, style=style)


_BlockDumper.add_representer(str, _represent_str)


def to_yaml(data) -> str:
    """Dump data as YAML, writing multi-line strings as literal blocks."""
    return yaml.dump(
        data,
        Dumper=_BlockDumper,
        default_flow_style=False,
        sort_keys=False,
        allow_unicode=True,
    )


def kind_cluster_config(config: ManagerConfig) -> dict:
    """Build the kind cluster config with the ingress ports mapped."""
    return {
        "kind": "Cluster",
        "apiVersion": "kind.x-k8s.io/v1alpha4",
        "nodes": [
            {
                "role": "control-plane",
                "kubeadmConfigPatches": [
                    to_yaml(
                        {
                            "kind": "InitConfiguration",
                            "nodeRegistration": {
                                "kubeletExtraArgs": {"node-labels": "ingress-ready=true"}
                            },
                        }
                    )
                ],
                "extraPortMappings": [
                    {"containerPort": 80, "hostPort": 8080, "protocol": "TCP"},
                    {"containerPort": 443, "hostPort": 8443, "protocol": "TCP"},
                ],
            }
        ],
    }


class KindProvisioner:
    """Local cluster provisioner backed by the kind CLI."""

    def list(self) -> list:
        """Return the names of existing kind clusters."""
        result = run_command(["kind", "get", "clusters"], check=False, quiet=True)
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def create(self, name: str, config_path: Path) -> None:
        """Create a kind cluster from a config file."""
        run_command(
            ["kind", "create", "cluster", "--name", name, "--config", str(config_path)]
        )

    def delete(self, name: str) -> None:
        """Delete a kind cluster."""
        run_command(["kind", "delete", "cluster", "--name", name])


class KubectlClient:
    """Cluster control-plane client backed by kubectl, pinned to one kube context."""

    def __init__(self, context: str):
        self.context = context

    def _cmd(self, *args) -> list:
        return ["kubectl", "--context", self.context, *args]

    def set_context(self, name: str) -> None:
        """Switch the current kube context."""
        run_command(["kubectl", "config", "use-context", name])

    def create_namespace(self, name: str) -> None:
        """Create a namespace."""
        run_command(self._cmd("create", "namespace", name))

    def namespace_exists(self, name: str) -> bool:
        """Check if a namespace exists."""
        result = run_command(
            self._cmd("get", "namespace", name), check=False, quiet=True
        )
        return result.returncode == 0

    def apply_manifest(self, document=None, url=None, path=None, namespace=None) -> None:
        """Apply a manifest from a URL, a file or an inline document."""
        command = self._cmd("apply")
        if namespace:
            command += ["-n", namespace]
        if url:
            run_command(command + ["-f", url])
        elif path:
            run_command(command + ["-f", str(path)])
        else:
            run_command(command + ["-f", "-"], input=document)

    def wait_for_available(self, resource: str, namespace: str, timeout: int) -> bool:
        """Wait for a resource to become available; False on timeout."""
        result = run_command(
            self._cmd(
                "wait",
                "--for=condition=available",
                f"--timeout={timeout}s",
                resource,
                "-n",
                namespace,
            ),
            check=False,
        )
        return result.returncode == 0

    def get_pods(self, namespace: str, selector: Optional[str] = None) -> list:
        """Return pods in a namespace as parsed JSON items."""
        command = self._cmd("get", "pods", "-n", namespace, "-o", "json")
        if selector:
            command += ["-l", selector]
        result = run_command(command, check=False, quiet=True)
        if result.returncode != 0 or not result.stdout:
            return []
        return json.loads(result.stdout).get("items", [])

    def pods_table(self, namespace: str) -> str:
        """Return the plain kubectl pod listing."""
        result = run_command(self._cmd("get", "pods", "-n", namespace), check=False, quiet=True)
        return result.stdout

    def scale_deployments(self, names, namespace: str, replicas: int, check=True) -> None:
        """Scale deployments to a replica count."""
        run_command(
            self._cmd("scale", "deployment", f"--replicas={replicas}", "-n", namespace, *names),
            check=check,
        )

    def delete_resource(self, kind: str, name: str, namespace: str, check=True) -> None:
        """Delete a resource if it exists."""
        run_command(
            self._cmd("delete", kind, name, "-n", namespace, "--ignore-not-found"),
            check=check,
        )

    def resource_exists(self, kind: str, name: str, namespace: str) -> bool:
        """Check if a resource exists."""
        result = run_command(
            self._cmd("get", kind, name, "-n", namespace), check=False, quiet=True
        )
        return result.returncode == 0

    def create_secret(self, name: str, namespace: str, literals: dict) -> None:
        """Create or update a generic secret from literal values."""
        command = self._cmd("create", "secret", "generic", name, "-n", namespace)
        command += [f"{LITERAL_FLAG}{key}={value}" for key, value in literals.items()]
        command += ["--dry-run=client", "-o", "yaml"]
        # Not echoed: the command line carries the secret values.
        rendered = run_command(command, quiet=True)
        self.apply_manifest(document=rendered.stdout)

    def get_secret(self, name: str, namespace: str, key: str) -> bytes:
        """Return one decoded value of a secret."""
        result = run_command(
            self._cmd("get", "secret", name, "-n", namespace, "-o", f"jsonpath={{.data.{key}}}"),
            quiet=True,
        )
        return base64.b64decode(result.stdout.strip().encode())

    def rollout_restart(self, namespace: str) -> None:
        """Request a rolling restart of every deployment in a namespace."""
        run_command(self._cmd("rollout", "restart", "deployment", "-n", namespace))

    def stream_logs(self, resource: str, namespace: str, tail: int) -> int:
        """Follow the logs of a resource until interrupted."""
        return stream_command(
            self._cmd("logs", "-f", resource, "-n", namespace, f"--tail={tail}")
        )

    def export_resource(self, kind: str, namespace: str, name: Optional[str] = None) -> Optional[str]:
        """Return the resource as YAML, or None when it does not exist."""
        command = self._cmd("get", kind)
        if name:
            command.append(name)
        command += ["-n", namespace, "-o", "yaml"]
        result = run_command(command, check=False, quiet=True)
        if result.returncode != 0 or not result.stdout.strip():
            return None
        return result.stdout

    def tunnel_command(self, namespace: str, port: int) -> list:
        """Build the port-forward command for the ArgoCD server."""
        # Context goes last so the command line still starts with TUNNEL_SIGNATURE.
        return [
            "kubectl",
            "port-forward",
            "svc/argocd-server",
            "-n",
            namespace,
            f"{port}:443",
            "--context",
            self.context,
        ]


class ArgocdCli:
    """GitOps application client backed by the argocd CLI."""

    def login(self, host: str, username: str, password: str, insecure=True) -> bool:
        """Log the argocd CLI in; False when the login fails."""
        command = ["argocd", "login", host, "--username", username, "--password-stdin"]
        if insecure:
            command.append("--insecure")
        result = run_command(command, check=False, input=password, quiet=True)
        return result.returncode == 0

    def list_applications(self) -> str:
        """List applications."""
        return run_command(["argocd", "app", "list"], print_output=True).stdout

    def sync_application(self, name: str) -> None:
        """Sync one application."""
        run_command(["argocd", "app", "sync", name], print_output=True)


class ProcessHandle(NamedTuple):
    pid: int
    cmdline: str


class ProcessTable:
    """Finds, launches and stops local processes by their command line."""

    def find_all(self, signature: str) -> list:
        """Return every live process whose command line contains the signature."""
        handles = []
        for proc in psutil.process_iter(["pid", "cmdline", "status"]):
            try:
                if proc.info.get("status") == psutil.STATUS_ZOMBIE:
                    continue
                cmdline = " ".join(proc.info.get("cmdline") or [])
                if signature in cmdline:
                    handles.append(ProcessHandle(proc.info["pid"], cmdline))
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        return handles

    def find_by_signature(self, signature: str) -> Optional[ProcessHandle]:
        """Return the first matching process, or None."""
        handles = self.find_all(signature)
        return handles[0] if handles else None

    def launch(self, command) -> int:
        """Start a detached process that outlives this invocation."""
        process = subprocess.Popen(
            command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
        return process.pid

    def terminate(self, handle: ProcessHandle, timeout=5) -> bool:
        """Terminate a process; False when it is gone or not ours to signal."""
        try:
            proc = psutil.Process(handle.pid)
            proc.terminate()
            try:
                proc.wait(timeout=timeout)
            except psutil.TimeoutExpired:
                proc.kill()
            return True
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False


class EnvironmentState(Enum):
    CLUSTER_ABSENT = "CLUSTER_DOWN"
    NOT_INSTALLED = "NOT_INSTALLED"
    PODS_DOWN = "PODS_DOWN"
    NO_ACCESS = "NO_ACCESS"
    RUNNING = "RUNNING"


STATE_MESSAGES = {
    EnvironmentState.CLUSTER_ABSENT: "kind cluster does not exist",
    EnvironmentState.NOT_INSTALLED: "Cluster exists but ArgoCD is not installed",
    EnvironmentState.PODS_DOWN: "ArgoCD is installed but its pods are not running",
    EnvironmentState.NO_ACCESS: "ArgoCD is running but no port-forward is active",
    EnvironmentState.RUNNING: "ArgoCD is running and reachable!",
}


class Observation(NamedTuple):
    cluster_exists: bool
    namespace_exists: bool
    workload_running: bool
    tunnel_alive: bool


def classify_observation(observation: Observation) -> EnvironmentState:
    """Map one observation to exactly one state.

    Checks run in a fixed priority order: cluster, namespace, server
    workload, tunnel. The first failing check decides the state.
    """
    if not observation.cluster_exists:
        return EnvironmentState.CLUSTER_ABSENT
    if not observation.namespace_exists:
        return EnvironmentState.NOT_INSTALLED
    if not observation.workload_running:
        return EnvironmentState.PODS_DOWN
    if not observation.tunnel_alive:
        return EnvironmentState.NO_ACCESS
    return EnvironmentState.RUNNING


class Credentials(NamedTuple):
    username: str
    password: str


class ReconcileResult(NamedTuple):
    initial_state: EnvironmentState
    steps: tuple
    credentials: Credentials


class BackupSnapshot(NamedTuple):
    path: Path
    files: list


class BackupResource(NamedTuple):
    filename: str
    kind: str
    name: Optional[str]
    restore: bool


BACKUP_RESOURCES = (
    BackupResource("applications.yaml", "applications", None, True),
    BackupResource("projects.yaml", "appprojects", None, True),
    BackupResource("notifications-cm.yaml", "configmap", "argocd-notifications-cm", True),
    BackupResource("notifications-secret.yaml", "secret", "argocd-notifications-secret", True),
    BackupResource("argocd-cm.yaml", "configmap", "argocd-cm", False),
    BackupResource("argocd-rbac-cm.yaml", "configmap", "argocd-rbac-cm", False),
)

SERVER_METADATA_FIELDS = (
    "resourceVersion",
    "uid",
    "creationTimestamp",
    "managedFields",
    "generation",
    "selfLink",
)


def _strip_server_fields(document: dict) -> dict:
    """Drop fields the API server fills in, so the document can be re-applied."""
    metadata = document.get("metadata") or {}
    for key in SERVER_METADATA_FIELDS:
        metadata.pop(key, None)
    annotations = metadata.get("annotations") or {}
    annotations.pop("kubectl.kubernetes.io/last-applied-configuration", None)
    if "annotations" in metadata and not annotations:
        del metadata["annotations"]
    document.pop("status", None)
    return document


def clean_export(raw: str) -> Optional[str]:
    """Prepare exported YAML for re-applying; None when there is nothing in it."""
    document = yaml.safe_load(raw)
    if not document:
        return None
    if document.get("kind", "").endswith("List"):
        items = document.get("items") or []
        if not items:
            return None
        document["items"] = [_strip_server_fields(item) for item in items]
        document.get("metadata", {}).pop("resourceVersion", None)
    else:
        _strip_server_fields(document)
    return to_yaml(document)


def notifications_configmap(namespace: str, owner: str, repo: str) -> dict:
    """Build the notifications ConfigMap for GitHub deployment status."""
    body = {
        "ref": "{{.app.status.sync.revision}}",
        "environment": '{{.app.metadata.labels.env | default "production"}}',
        "description": "🚀 {{.app.metadata.name}} deployed via ArgoCD",
        "payload": {
            "application": "{{.app.metadata.name}}",
            "revision": "{{.app.status.sync.revision}}",
            "syncStatus": "{{.app.status.sync.status}}",
        },
    }
    template = {
        "webhook": {
            "github": {
                "method": "POST",
                "path": f"/repos/{owner}/{repo}/deployments",
                "body": json.dumps(body, indent=2, ensure_ascii=False) + "\n",
            }
        }
    }
    trigger = [
        {
            "send": ["github-deployment"],
            "when": "app.status.sync.status == 'Synced' and app.status.health.status == 'Healthy'",
        }
    ]
    subscriptions = [{"recipients": [f"github:{owner}/{repo}"], "triggers": ["on-deployed"]}]
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": "argocd-notifications-cm", "namespace": namespace},
        "data": {
            "service.github": "token: $github-token\n",
            "template.github-deployment": to_yaml(template),
            "trigger.on-deployed": to_yaml(trigger),
            "subscriptions": to_yaml(subscriptions),
        },
    }


class LifecycleController:
    """Drives the local environment towards RUNNING.

    State is never cached: every decision starts from a fresh observation of
    the cluster, the namespace, the server pods and the port-forward.
    """

    REMEDIATION = {
        EnvironmentState.CLUSTER_ABSENT: (
            "create_cluster",
            "install_argocd",
            "wait_for_ready",
            "start_tunnel",
        ),
        EnvironmentState.NOT_INSTALLED: ("install_argocd", "wait_for_ready", "start_tunnel"),
        EnvironmentState.PODS_DOWN: ("restart_workloads", "wait_for_ready", "start_tunnel"),
        EnvironmentState.NO_ACCESS: ("start_tunnel",),
        EnvironmentState.RUNNING: (),
    }

    def __init__(
        self,
        config: ManagerConfig,
        cluster=None,
        kubectl=None,
        argocd=None,
        processes=None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.cluster = cluster or KindProvisioner()
        self.kubectl = kubectl or KubectlClient(config.context_name)
        self.argocd = argocd or ArgocdCli()
        self.processes = processes or ProcessTable()
        self.sleep = sleep

    # Observations

    def cluster_exists(self) -> bool:
        """Check if the managed kind cluster exists."""
        return self.config.cluster_name in self.cluster.list()

    def namespace_exists(self) -> bool:
        """Check if the ArgoCD namespace exists."""
        return self.kubectl.namespace_exists(self.config.namespace)

    def workload_running(self) -> bool:
        """Check if an ArgoCD server pod is running and not being deleted."""
        pods = self.kubectl.get_pods(self.config.namespace, self.config.server_selector)
        return any(
            pod.get("status", {}).get("phase") == "Running" and not pod.get("metadata", {}).get("deletionTimestamp")
            for pod in pods
        )

    def tunnel_alive(self) -> bool:
        """Check if a port-forward process is alive."""
        return self.processes.find_by_signature(TUNNEL_SIGNATURE) is not None

    def observe(self) -> Observation:
        """Take the four observations, short-circuiting once the outcome is fixed."""
        cluster = self.cluster_exists()
        namespace = cluster and self.namespace_exists()
        workload = namespace and self.workload_running()
        tunnel = workload and self.tunnel_alive()
        return Observation(cluster, namespace, workload, tunnel)

    def classify(self) -> EnvironmentState:
        """Observe the environment and return its current state."""
        return classify_observation(self.observe())

    # Remediation steps

    def create_cluster(self) -> None:
        """Create the kind cluster and switch kubectl to it."""
        echo_title("CREATING KIND CLUSTER")
        if self.cluster_exists():
            echo_warn(f"Cluster {self.config.cluster_name} already exists")
            return
        self.config.kind_config_path.parent.mkdir(parents=True, exist_ok=True)
        self.config.kind_config_path.write_text(to_yaml(kind_cluster_config(self.config)))
        echo_info("Creating kind cluster...")
        self.cluster.create(self.config.cluster_name, self.config.kind_config_path)
        self.kubectl.set_context(self.config.context_name)
        echo_success("Cluster created!")

    def install_argocd(self) -> None:
        """Create the namespace and apply the ArgoCD install manifest."""
        echo_title("INSTALLING ARGOCD")
        if not self.namespace_exists():
            echo_info("Creating namespace...")
            self.kubectl.create_namespace(self.config.namespace)
        echo_info("Installing ArgoCD...")
        self.kubectl.apply_manifest(url=self.config.install_manifest, namespace=self.config.namespace)

    def wait_for_ready(self) -> None:
        """Wait for the core ArgoCD deployments to become available."""
        echo_info("Waiting for ArgoCD pods to be ready...")
        for deployment in self.config.ready_deployments:
            if not self.kubectl.wait_for_available(
                f"deployment/{deployment}", self.config.namespace, self.config.wait_timeout
            ):
                raise ReadinessTimeout(
                    f"deployment/{deployment} was not available after {self.config.wait_timeout}s"
                )
        echo_success("ArgoCD pods are ready!")

    def restart_workloads(self) -> None:
        """Bring scaled-down or deleted workloads back and restart them."""
        echo_info("Restarting ArgoCD pods...")
        namespace = self.config.namespace
        self.kubectl.scale_deployments(self.config.managed_deployments, namespace, 1, check=False)
        if not self.kubectl.resource_exists("statefulset", self.config.controller_statefulset, namespace):
            self.kubectl.apply_manifest(url=self.config.install_manifest, namespace=namespace)
        self.kubectl.rollout_restart(namespace)

    def start_tunnel(self) -> None:
        """Start the port-forward unless one is already alive."""
        if self.tunnel_alive():
            echo_warn("Port-forward is already active")
            return
        echo_info("Starting port-forward...")
        self.processes.launch(self.kubectl.tunnel_command(self.config.namespace, self.config.port))
        self.sleep(self.config.tunnel_settle_seconds)
        if not self.tunnel_alive():
            raise ArgocdManagerError("Failed to start port-forward")
        echo_success(f"Port-forward active on port {self.config.port}")

    def stop_tunnel(self) -> None:
        """Terminate every port-forward process, if any."""
        echo_info("Stopping port-forward...")
        for handle in self.processes.find_all(TUNNEL_SIGNATURE):
            self.processes.terminate(handle)
        echo_success("Port-forward stopped")

    # Operations

    def reconcile(self) -> ReconcileResult:
        """Run the remediation for the observed state, then verify RUNNING."""
        echo_title("STARTING ARGOCD")
        state = self.classify()
        steps = self.REMEDIATION[state]
        if not steps:
            echo_success("ArgoCD is already running!")
        for step in steps:
            getattr(self, step)()

        final_state = self.classify()
        if final_state is not EnvironmentState.RUNNING:
            raise ArgocdManagerError(
                f"ArgoCD did not reach a running state: {STATE_MESSAGES[final_state]}"
            )

        credentials = self.credentials()
        echo_success("ArgoCD is ready!")
        self.show_credentials(credentials)

        echo_info("Logging in with the ArgoCD CLI...")
        if not self.argocd.login(self.config.host, credentials.username, credentials.password):
            echo_warn("argocd login failed, log in manually if you need the CLI")
        return ReconcileResult(state, steps, credentials)

    def stop(self) -> None:
        """Stop the port-forward and scale ArgoCD down, keeping the cluster."""
        echo_title("STOPPING ARGOCD")
        self.stop_tunnel()
        if self.namespace_exists():
            echo_info("Scaling ArgoCD pods down...")
            namespace = self.config.namespace
            self.kubectl.scale_deployments(self.config.managed_deployments, namespace, 0, check=False)
            self.kubectl.delete_resource(
                "statefulset", self.config.controller_statefulset, namespace, check=False
            )
        echo_success("ArgoCD stopped (cluster kept)")

    def clean(self) -> None:
        """Delete the cluster and all local files."""
        echo_title("CLEANING UP")
        self.stop_tunnel()
        if self.cluster_exists():
            echo_info("Deleting kind cluster...")
            self.cluster.delete(self.config.cluster_name)
        self.config.kind_config_path.unlink(missing_ok=True)
        shutil.rmtree(self.config.config_dir, ignore_errors=True)
        echo_success("Everything cleaned up!")

    def restart(self) -> ReconcileResult:
        """Stop, let the port settle, then start again."""
        echo_title("RESTARTING ARGOCD")
        self.stop()
        # The orchestrator needs a moment to release the forwarded port.
        self.sleep(self.config.restart_settle_seconds)
        return self.reconcile()

    def credentials(self) -> Credentials:
        """Read the admin credentials from the cluster."""
        if not self.namespace_exists():
            raise PreconditionError("ArgoCD is not installed")
        password = self.kubectl.get_secret(INITIAL_ADMIN_SECRET, self.config.namespace, "password")
        return Credentials(ADMIN_USERNAME, password.decode())

    def show_credentials(self, credentials: Credentials) -> None:
        print(
            f"\n{Colors.BOLD.value}{Colors.CYAN.value}ArgoCD UI:{Colors.RESET.value} "
            f"{Colors.CYAN.value}{self.config.url}{Colors.RESET.value}"
        )
        print(f"{Colors.BOLD.value}ArgoCD Username:{Colors.RESET.value} {credentials.username}")
        print(
            f"{Colors.BOLD.value}{Colors.GREEN.value}ArgoCD Password:{Colors.RESET.value} "
            f"{Colors.YELLOW.value}{credentials.password}{Colors.RESET.value}"
        )

    def status(self) -> EnvironmentState:
        """Print the current state and return it."""
        echo_title("ARGOCD STATUS")
        observation = self.observe()
        state = classify_observation(observation)

        if state is EnvironmentState.RUNNING:
            echo_success(STATE_MESSAGES[state])
            try:
                self.show_credentials(self.credentials())
            except (ArgocdManagerError, subprocess.CalledProcessError, ValueError):
                self.show_credentials(Credentials(ADMIN_USERNAME, "N/A"))
        else:
            echo_warn(STATE_MESSAGES[state])
            if state is EnvironmentState.PODS_DOWN:
                print(self.kubectl.pods_table(self.config.namespace))

        print()
        echo_info(f"kind cluster: {'✅ exists' if observation.cluster_exists else '❌ missing'}")
        echo_info(
            f"ArgoCD namespace: {'✅ installed' if observation.namespace_exists else '❌ not installed'}"
        )
        echo_info(f"Port-forward: {'✅ active' if self.tunnel_alive() else '❌ inactive'}")
        return state

    def logs(self, component="server", tail=50) -> int:
        """Follow the logs of an ArgoCD component."""
        if not self.namespace_exists():
            raise PreconditionError("ArgoCD is not installed")
        echo_title("ARGOCD LOGS")
        echo_info("Press Ctrl+C to exit")
        print()
        return self.kubectl.stream_logs(f"deployment/argocd-{component}", self.config.namespace, tail)

    def list_snapshots(self) -> list:
        """Return backup directories, oldest first."""
        if not self.config.config_dir.is_dir():
            return []
        return sorted(
            path
            for path in self.config.config_dir.iterdir()
            if path.is_dir() and path.name.startswith(SNAPSHOT_PREFIX)
        )

    def backup(self) -> BackupSnapshot:
        """Export ArgoCD resources into a new timestamped directory."""
        echo_title("BACKING UP")
        if not self.namespace_exists():
            raise PreconditionError("ArgoCD is not installed")

        stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        snapshot_dir = self.config.config_dir / f"{SNAPSHOT_PREFIX}{stamp}"
        try:
            snapshot_dir.mkdir(parents=True, exist_ok=False)
        except FileExistsError:
            raise PreconditionError(f"Backup {snapshot_dir} already exists, try again")
        echo_info(f"Saving configuration to {snapshot_dir}")

        written = []
        for resource in BACKUP_RESOURCES:
            raw = self.kubectl.export_resource(resource.kind, self.config.namespace, resource.name)
            document = clean_export(raw) if raw else None
            if document is None:
                continue
            (snapshot_dir / resource.filename).write_text(document)
            written.append(resource.filename)

        echo_success(f"Backup saved to {snapshot_dir}")
        return BackupSnapshot(snapshot_dir, written)

    def resolve_snapshot(self, snapshot) -> Path:
        """Find a backup directory by path or by name."""
        if snapshot:
            for candidate in (Path(snapshot), self.config.config_dir / snapshot):
                if candidate.is_dir():
                    return candidate
        available = ", ".join(path.name for path in self.list_snapshots()) or "none"
        raise PreconditionError(
            f"Backup directory not found: {snapshot or '<empty>'} (available backups: {available})"
        )

    def restore(self, snapshot) -> list:
        """Apply the restorable files of a backup."""
        snapshot_dir = self.resolve_snapshot(snapshot)
        if not self.namespace_exists():
            raise PreconditionError("ArgoCD is not installed")

        echo_title("RESTORING BACKUP")
        echo_info(f"Restoring from: {snapshot_dir}")
        applied = []
        for resource in BACKUP_RESOURCES:
            path = snapshot_dir / resource.filename
            if not resource.restore or not path.is_file():
                continue
            self.kubectl.apply_manifest(path=path)
            applied.append(resource.filename)
        echo_success("Configuration restored!")
        return applied

    def setup_notifications(self, token: str, owner: str, repo: str) -> None:
        """Configure GitHub deployment notifications."""
        echo_title("CONFIGURING NOTIFICATIONS")
        if not self.namespace_exists():
            raise PreconditionError("ArgoCD is not installed")
        if not (token and owner and repo):
            raise PreconditionError("GitHub token, owner and repository are all required")

        namespace = self.config.namespace
        self.kubectl.create_secret(
            "argocd-notifications-secret", namespace, {"github-token": token}
        )
        self.kubectl.apply_manifest(document=to_yaml(notifications_configmap(namespace, owner, repo)))
        echo_success("Notifications configured!")

    def list_applications(self) -> str:
        return self.argocd.list_applications()

    def sync_application(self, name: str) -> None:
        """Sync one application through the argocd CLI."""
        if not name:
            raise PreconditionError("Usage: sync <app-name>")
        self.argocd.sync_application(name)


def prompt_cached(config: dict, key: str, prompt: str, input_func=input) -> str:
    """Ask for a value, offering the cached answer first."""
    cached = config.get(key)
    if cached:
        print(f"Found cached {key.replace('_', ' ')}: {cached}")
        if input_func("Use this cached value? (y/n): ").lower() == "y":
            return cached
    return input_func(prompt).strip()


def cmd_start(controller: LifecycleController, args, input_func=input):
    """Start or repair the environment."""
    controller.reconcile()


def cmd_stop(controller: LifecycleController, args, input_func=input):
    """Stop ArgoCD, keeping the cluster."""
    controller.stop()


def cmd_restart(controller: LifecycleController, args, input_func=input):
    """Restart ArgoCD."""
    controller.restart()


def cmd_clean(controller: LifecycleController, args, input_func=input):
    """Delete everything."""
    controller.clean()


def cmd_status(controller: LifecycleController, args, input_func=input):
    """Show status."""
    controller.status()


def cmd_logs(controller: LifecycleController, args, input_func=input):
    """Follow component logs."""
    controller.logs(args.component, args.tail)


def cmd_backup(controller: LifecycleController, args, input_func=input):
    """Take a backup."""
    controller.backup()


def cmd_restore(controller: LifecycleController, args, input_func=input):
    """Restore a backup."""
    controller.restore(args.snapshot)


def cmd_notifications(controller: LifecycleController, args, input_func=input):
    """Ask for GitHub details and set up notifications."""
    if not controller.namespace_exists():
        raise PreconditionError("ArgoCD is not installed")
    cache = load_config(controller.config.config_file)
    token = getpass.getpass("GitHub Token: ")
    owner = prompt_cached(cache, "github_owner", "GitHub Owner (user/org): ", input_func)
    repo = prompt_cached(cache, "github_repo", "GitHub Repository (app repo): ", input_func)
    controller.setup_notifications(token, owner, repo)
    if cache.get("github_owner") != owner or cache.get("github_repo") != repo:
        cache.update(github_owner=owner, github_repo=repo)
        save_config(controller.config.config_file, cache)


def cmd_password(controller: LifecycleController, args, input_func=input):
    """Print the admin password."""
    print(controller.credentials().password)


def cmd_apps(controller: LifecycleController, args, input_func=input):
    """List applications."""
    controller.list_applications()


def cmd_sync(controller: LifecycleController, args, input_func=input):
    """Sync an application."""
    controller.sync_application(args.app)


def build_parser() -> argparse.ArgumentParser:
    """Build the command line parser."""
    parser = argparse.ArgumentParser(
        prog="argocd-manager",
        description="Manage a local ArgoCD environment with kind. "
        "Run without a command for the interactive menu.",
    )
    parser.add_argument("--cluster-name", default="argocd-local", help="local kind cluster name")
    parser.add_argument("--namespace", default="argocd", help="Kubernetes namespace for ArgoCD")
    parser.add_argument("--port", type=int, default=8080, help="local port for the port-forward")
    parser.add_argument(
        "--config-dir", default="argocd-config", help="directory for backups and cached answers"
    )
    subparsers = parser.add_subparsers(title="commands", dest="command")

    start_parser = subparsers.add_parser("start", aliases=["up"], help="Start ArgoCD")
    start_parser.set_defaults(func=cmd_start)

    stop_parser = subparsers.add_parser(
        "stop", aliases=["down"], help="Stop ArgoCD pods and port-forward, keep the cluster"
    )
    stop_parser.set_defaults(func=cmd_stop)

    restart_parser = subparsers.add_parser("restart", help="Stop then start ArgoCD")
    restart_parser.set_defaults(func=cmd_restart)

    clean_parser = subparsers.add_parser("clean", help="Delete the cluster and local files")
    clean_parser.set_defaults(func=cmd_clean)

    status_parser = subparsers.add_parser("status", help="Show status")
    status_parser.set_defaults(func=cmd_status)

    logs_parser = subparsers.add_parser("logs", help="Follow ArgoCD logs")
    logs_parser.add_argument(
        "component", nargs="?", default="server", help="server, repo-server, dex-server, ..."
    )
    logs_parser.add_argument("--tail", type=int, default=50, help="lines of history to show")
    logs_parser.set_defaults(func=cmd_logs)

    backup_parser = subparsers.add_parser("backup", help="Back up ArgoCD configuration")
    backup_parser.set_defaults(func=cmd_backup)

    restore_parser = subparsers.add_parser("restore", help="Restore a backup")
    restore_parser.add_argument("snapshot", nargs="?", help="backup directory or name")
    restore_parser.set_defaults(func=cmd_restore)

    notifications_parser = subparsers.add_parser(
        "notifications", help="Configure GitHub deployment notifications"
    )
    notifications_parser.set_defaults(func=cmd_notifications)

    password_parser = subparsers.add_parser("password", help="Print the admin password")
    password_parser.set_defaults(func=cmd_password)

    apps_parser = subparsers.add_parser("apps", help="List applications")
    apps_parser.set_defaults(func=cmd_apps)

    sync_parser = subparsers.add_parser("sync", help="Sync an application")
    sync_parser.add_argument("app", help="application name")
    sync_parser.set_defaults(func=cmd_sync)

    subparsers.add_parser("help", help="Show this help")
    return parser


def cmd_menu_restore(controller: LifecycleController, args, input_func=input):
    """List backups and restore the one the user picks."""
    snapshots = controller.list_snapshots()
    print("Available backups:")
    if snapshots:
        for snapshot in snapshots:
            print(f"  {snapshot.name}")
    else:
        print("  No backups found")
    name = input_func("Enter the backup directory name: ").strip()
    controller.restore(name)


MENU = (
    ("1", "🚀 Start ArgoCD", cmd_start),
    ("2", "⏹️  Stop ArgoCD", cmd_stop),
    ("3", "🔄 Restart ArgoCD", cmd_restart),
    ("4", "🧹 Clean everything", cmd_clean),
    ("5", "📊 Status", cmd_status),
    ("6", "📋 Logs", cmd_logs),
    ("7", "💾 Back up configuration", cmd_backup),
    ("8", "📥 Restore configuration", cmd_menu_restore),
    ("9", "🔔 Configure notifications", cmd_notifications),
)


def show_menu():
    """Print the interactive menu."""
    echo_title("ARGOCD MANAGER")
    for key, label, _ in MENU:
        print(f"{key}. {label}")
    print("0. ❌ Exit")
    print()


def run_menu(controller: LifecycleController, input_func=input) -> int:
    """Interactive loop over the same handlers the subcommands use."""
    actions = {key: handler for key, _, handler in MENU}
    menu_args = argparse.Namespace(component="server", tail=50, snapshot=None, app=None)
    while True:
        show_menu()
        try:
            choice = input_func("Choose an option: ").strip()
        except EOFError:
            return 0
        print()

        if choice == "0":
            echo_info("Bye! 👋")
            return 0

        handler = actions.get(choice)
        if handler is None:
            echo_error("Invalid option")
        else:
            try:
                handler(controller, menu_args, input_func)
            except (ArgocdManagerError, subprocess.CalledProcessError) as e:
                echo_error(describe_failure(e))
            except KeyboardInterrupt:
                print()

        print()
        try:
            input_func("Press Enter to continue...")
        except EOFError:
            return 0
        print("\033[2J\033[H", end="")


def main(argv=None, controller_factory=LifecycleController) -> int:
    """Entry point for the console script; returns the exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "help":
        parser.print_help()
        return 0

    try:
        check_prerequisites()
        controller = controller_factory(ManagerConfig.from_args(args))
        if args.command is None:
            return run_menu(controller)
        args.func(controller, args)
    except PrerequisiteError as e:
        echo_error(str(e))
        echo_info(f"Install with: brew install {' '.join(e.missing)}")
        return 1
    except (ArgocdManagerError, subprocess.CalledProcessError) as e:
        echo_error(describe_failure(e))
        return 1
    except KeyboardInterrupt:
        print("\nOperation cancelled by user")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
