"""Role-specific step catalogs.

The node preparation (including a connectivity test between the nodes),
runtime installation, control-plane initialisation, worker join, Flannel with
its pod network test, ingress-nginx and local-path storage phases are declared
here as tagged steps with explicit dependencies. Role-specific behaviour
(firewall ports, init vs join, cluster add-ons) is selected by `Role`.
"""

from __future__ import annotations

import shlex
from dataclasses import dataclass
from pathlib import Path

from kube_bootstrap.orchestrator.config import BootstrapSettings
from kube_bootstrap.orchestrator.workflow.errors import ConfigError
from kube_bootstrap.orchestrator.workflow.state_machine import Role
from kube_bootstrap.orchestrator.workflow.steps import ActionChain, AllOf, Step

from .host import (
    CheckNodeConnectivity,
    ConfigureContainerd,
    CopyFile,
    DirectoryReady,
    DisableSwap,
    EnsureDirectory,
    EnsureLines,
    FileContains,
    FileExists,
    FileHasContent,
    InspectNetworkEnvironment,
    LinesPresent,
    ModulesLoaded,
    SwapDisabled,
    WriteFile,
)
from .kubectl import (
    ClusterReachable,
    DefaultStorageClass,
    Kubectl,
    KubectlCommands,
    KubectlDiagnostics,
    NodesReady,
    PodsReady,
    ResourceAbsent,
    ServiceHasType,
)
from .manifests import DownloadManifest, IngressReachable, ManifestFetcher
from .shell import CommandOutputContains, CommandRunner, CommandSucceeds, Runner, RunCommands

KERNEL_MODULES = ("overlay", "br_netfilter")

SYSCTL_CONF = """\
net.bridge.bridge-nf-call-iptables  = 1
net.bridge.bridge-nf-call-ip6tables = 1
net.ipv4.ip_forward                 = 1
"""

COMMON_PORTS = ("10250/tcp", "30000-32767/tcp", "8285/udp", "8472/udp", "80/tcp", "443/tcp")
CONTROL_PLANE_PORTS = ("6443/tcp", "2379-2380/tcp", "10251/tcp", "10252/tcp", "10255/tcp")

CONTAINERD_PREREQS = ("yum-utils", "device-mapper-persistent-data", "lvm2")
KUBERNETES_PACKAGES = ("kubelet", "kubeadm", "kubectl")

ADMIN_CONF = "/etc/kubernetes/admin.conf"
KUBELET_CONF = "/etc/kubernetes/kubelet.conf"

INGRESS_NAMESPACE = "ingress-nginx"
INGRESS_SERVICE = "ingress-nginx-controller"
INGRESS_WEBHOOK = "ingress-nginx-admission"

NETWORK_TEST_POD = "kube-bootstrap-network-test"

FLANNEL_DIAGNOSTICS = (
    ("get", "configmap", "kube-flannel-cfg", "-n", "kube-flannel", "-o", "yaml"),
    ("get", "service", "-n", "kube-flannel"),
    ("describe", "pods", "-n", "kube-flannel"),
    ("get", "events", "-n", "kube-flannel", "--sort-by=.lastTimestamp"),
    ("describe", "nodes"),
)

SMOKE_TEST_INGRESS = """\
apiVersion: networking.k8s.io/v1
kind: Ingress
metadata:
  name: test-ingress
spec:
  ingressClassName: nginx
  rules:
  - http:
      paths:
      - path: /
        pathType: Prefix
        backend:
          service:
            name: test-app
            port:
              number: 80
"""


def kubernetes_repo(version: str) -> str:
    base = f"https://pkgs.k8s.io/core:/stable:/{version}/rpm/"
    return (
        "[kubernetes]\n"
        "name=Kubernetes\n"
        f"baseurl={base}\n"
        "enabled=1\n"
        "gpgcheck=1\n"
        f"gpgkey={base}repodata/repomd.xml.key\n"
    )


def proxy_dropin(settings: BootstrapSettings) -> str:
    lines = ["[Service]"]
    for name, value in (
        ("HTTP_PROXY", settings.http_proxy),
        ("HTTPS_PROXY", settings.https_proxy),
        ("NO_PROXY", settings.no_proxy),
    ):
        if value:
            lines.append(f'Environment="{name}={value}"')
    return "\n".join(lines) + "\n"


@dataclass(frozen=True, slots=True)
class Toolkit:
    """External collaborators shared by the steps of one run."""

    runner: Runner
    kubectl: Kubectl
    fetcher: ManifestFetcher

    @classmethod
    def from_settings(cls, settings: BootstrapSettings) -> Toolkit:
        runner = CommandRunner(env=settings.proxy_env())
        return cls(
            runner=runner,
            kubectl=Kubectl(runner=runner, kubeconfig=settings.host_path(settings.kubeconfig_path)),
            fetcher=ManifestFetcher(
                proxies=settings.requests_proxies(), timeout=settings.http_timeout_seconds
            ),
        )

    def close(self) -> None:
        self.fetcher.close()


class _Catalog:
    """Builds the step list for one role. Declaration order is execution order for ties."""

    def __init__(self, role: Role, settings: BootstrapSettings, toolkit: Toolkit) -> None:
        self.role = role
        self.settings = settings
        self.tk = toolkit
        self.steps: list[Step] = []

    def add(self, step_id: str, action, *, depends_on: tuple[str, ...] = (), **kwargs) -> str:
        kwargs.setdefault("timeout", self.settings.command_timeout_seconds)
        kwargs.setdefault("max_retries", self.settings.step_max_retries)
        kwargs.setdefault("verify_timeout", self.settings.verify_timeout_seconds)
        kwargs.setdefault("verify_interval", self.settings.verify_interval_seconds)
        self.steps.append(Step(id=step_id, action=action, depends_on=depends_on, **kwargs))
        return step_id

    def path(self, host_path: str | Path) -> Path:
        return self.settings.host_path(host_path)

    @property
    def hostname(self) -> str:
        if self.role == Role.CONTROL_PLANE:
            return self.settings.control_plane_hostname
        return self.settings.worker_hostname

    def build(self) -> list[Step]:
        node = self.node_preparation()
        runtime = self.container_runtime(node)
        kube = self.kubernetes_packages(node, runtime)
        if self.role == Role.CONTROL_PLANE:
            self.control_plane(kube)
        else:
            self.worker(kube)
        return self.steps

    def node_preparation(self) -> list[str]:
        s, tk = self.settings, self.tk
        ready: list[str] = []

        self.add(
            "inspect_network_environment",
            InspectNetworkEnvironment(
                runner=tk.runner,
                environment_file=self.path("/etc/environment"),
                proxy_env=tuple(sorted(s.proxy_env().items())),
            ),
            description="Warn about Zscaler and proxy settings that affect cluster networking",
            max_retries=0,
        )

        packages = tuple(s.base_packages)
        commands: list[tuple[str, ...]] = []
        if s.system_update:
            commands.append(("dnf", "update", "-y"))
        commands.append(("dnf", "install", "-y", *packages))
        ready.append(
            self.add(
                "install_base_packages",
                RunCommands(runner=tk.runner, commands=tuple(commands)),
                precondition=None
                if s.system_update
                else CommandSucceeds(runner=tk.runner, commands=(("rpm", "-q", *packages),)),
                description="Install base tooling with dnf",
            )
        )

        hosts = self.path("/etc/hosts")
        hostname_line = f"127.0.0.1 {self.hostname}"
        ready.append(
            self.add(
                "configure_hostname",
                ActionChain(
                    (
                        RunCommands(
                            runner=tk.runner,
                            commands=(("hostnamectl", "set-hostname", self.hostname),),
                        ),
                        EnsureLines(path=hosts, lines=(hostname_line,)),
                    )
                ),
                precondition=AllOf(
                    (
                        CommandOutputContains(
                            runner=tk.runner,
                            argv=("hostnamectl", "--static"),
                            expected=(self.hostname,),
                        ),
                        LinesPresent(path=hosts, lines=(hostname_line,)),
                    )
                ),
                description=f"Set hostname to {self.hostname}",
            )
        )

        host_entries = tuple(
            f"{ip} {name}"
            for ip, name in (
                (s.control_plane_ip, s.control_plane_hostname),
                (s.worker_ip, s.worker_hostname),
            )
            if ip
        )
        if host_entries:
            ready.append(
                self.add(
                    "configure_hosts",
                    EnsureLines(path=hosts, lines=host_entries),
                    depends_on=("configure_hostname",),
                    precondition=LinesPresent(path=hosts, lines=host_entries),
                    description="Map cluster node names in /etc/hosts",
                )
            )
            peers = tuple((entry.split()[1], (22,)) for entry in host_entries)
            self.add(
                "test_node_connectivity",
                CheckNodeConnectivity(
                    runner=tk.runner, peers=peers, strict=s.require_node_connectivity
                ),
                depends_on=("configure_hosts",),
                description="Resolve, ping and reach SSH on the cluster nodes",
            )

        if s.configure_firewall:
            ports = COMMON_PORTS + (
                CONTROL_PLANE_PORTS if self.role == Role.CONTROL_PLANE else ()
            )
            commands = [("firewall-cmd", "--permanent", f"--add-port={p}") for p in ports]
            commands.append(("firewall-cmd", "--reload"))
            ready.append(
                self.add(
                    "configure_firewall",
                    RunCommands(runner=tk.runner, commands=tuple(commands)),
                    precondition=CommandOutputContains(
                        runner=tk.runner, argv=("firewall-cmd", "--list-ports"), expected=ports
                    ),
                    description=f"Open Kubernetes ports for the {self.role.value} role",
                )
            )

        fstab = self.path("/etc/fstab")
        ready.append(
            self.add(
                "disable_swap",
                DisableSwap(runner=tk.runner, fstab=fstab),
                precondition=SwapDisabled(proc_swaps=self.path("/proc/swaps"), fstab=fstab),
                description="Turn swap off now and on boot",
            )
        )

        modules_conf = self.path("/etc/modules-load.d/k8s.conf")
        modules_content = "\n".join(KERNEL_MODULES) + "\n"
        self.add(
            "configure_kernel_modules",
            ActionChain(
                (
                    WriteFile(path=modules_conf, content=modules_content),
                    RunCommands(
                        runner=tk.runner,
                        commands=tuple(("modprobe", m) for m in KERNEL_MODULES),
                    ),
                )
            ),
            precondition=AllOf(
                (
                    FileHasContent(path=modules_conf, content=modules_content),
                    ModulesLoaded(proc_modules=self.path("/proc/modules"), modules=KERNEL_MODULES),
                )
            ),
            description="Load overlay and br_netfilter now and on boot",
        )

        sysctl_conf = self.path("/etc/sysctl.d/k8s.conf")
        ready.append(
            self.add(
                "configure_sysctl",
                ActionChain(
                    (
                        WriteFile(path=sysctl_conf, content=SYSCTL_CONF),
                        RunCommands(runner=tk.runner, commands=(("sysctl", "--system"),)),
                    )
                ),
                depends_on=("configure_kernel_modules",),
                precondition=FileHasContent(path=sysctl_conf, content=SYSCTL_CONF),
                description="Enable bridged traffic filtering and IP forwarding",
            )
        )
        return ready

    def container_runtime(self, node: list[str]) -> str:
        s, tk = self.settings, self.tk

        self.add(
            "install_containerd",
            RunCommands(
                runner=tk.runner,
                commands=(
                    ("dnf", "install", "-y", *CONTAINERD_PREREQS),
                    ("dnf", "config-manager", "--add-repo", s.docker_repo_url),
                    ("dnf", "install", "-y", "containerd.io"),
                ),
            ),
            depends_on=("install_base_packages",),
            precondition=CommandSucceeds(
                runner=tk.runner, commands=(("rpm", "-q", "containerd.io"),)
            ),
            description="Install containerd from the Docker CE repository",
        )

        config = self.path("/etc/containerd/config.toml")
        self.add(
            "configure_containerd",
            ConfigureContainerd(runner=tk.runner, config_path=config),
            depends_on=("install_containerd",),
            precondition=FileContains(path=config, needle="SystemdCgroup = true"),
            description="Use the systemd cgroup driver",
        )

        start_deps: tuple[str, ...] = ("configure_containerd",)
        if s.proxy_configured:
            dropin = proxy_dropin(s)
            targets = (
                self.path("/etc/systemd/system/containerd.service.d/http-proxy.conf"),
                self.path("/etc/systemd/system/kubelet.service.d/http-proxy.conf"),
            )
            start_deps += (
                self.add(
                    "configure_runtime_proxy",
                    ActionChain(
                        tuple(WriteFile(path=t, content=dropin) for t in targets)
                        + (
                            RunCommands(
                                runner=tk.runner,
                                commands=(("systemctl", "daemon-reload"),),
                            ),
                        )
                    ),
                    depends_on=("install_containerd",),
                    precondition=AllOf(
                        tuple(FileHasContent(path=t, content=dropin) for t in targets)
                    ),
                    description="Route containerd and kubelet traffic through the proxy",
                ),
            )

        return self.add(
            "start_containerd",
            RunCommands(
                runner=tk.runner,
                commands=(
                    ("systemctl", "enable", "--now", "containerd"),
                    ("systemctl", "restart", "containerd"),
                ),
            ),
            depends_on=start_deps,
            verify=CommandSucceeds(
                runner=tk.runner, commands=(("systemctl", "is-active", "--quiet", "containerd"),)
            ),
            description="Enable and restart containerd",
        )

    def kubernetes_packages(self, node: list[str], runtime: str) -> str:
        s, tk = self.settings, self.tk
        repo = self.path("/etc/yum.repos.d/kubernetes.repo")
        repo_content = kubernetes_repo(s.kubernetes_version)

        self.add(
            "install_kubernetes_packages",
            ActionChain(
                (
                    WriteFile(path=repo, content=repo_content),
                    RunCommands(
                        runner=tk.runner,
                        commands=(("dnf", "install", "-y", *KUBERNETES_PACKAGES),),
                    ),
                )
            ),
            depends_on=("install_base_packages",),
            precondition=AllOf(
                (
                    FileHasContent(path=repo, content=repo_content),
                    CommandSucceeds(
                        runner=tk.runner, commands=(("rpm", "-q", *KUBERNETES_PACKAGES),)
                    ),
                )
            ),
            description=f"Install kubelet, kubeadm and kubectl ({s.kubernetes_version})",
        )

        self.add(
            "enable_kubelet",
            RunCommands(runner=tk.runner, commands=(("systemctl", "enable", "kubelet"),)),
            depends_on=("install_kubernetes_packages", runtime, *node),
            precondition=CommandSucceeds(
                runner=tk.runner, commands=(("systemctl", "is-enabled", "--quiet", "kubelet"),)
            ),
            description="Enable the kubelet service",
        )

        return self.add(
            "verify_installation",
            RunCommands(
                runner=tk.runner,
                commands=(
                    ("kubeadm", "version"),
                    ("kubelet", "--version"),
                    ("kubectl", "version", "--client"),
                ),
            ),
            depends_on=("enable_kubelet",),
            description="Check the installed Kubernetes binaries",
        )

    def local_path_dir(self, after: str) -> str:
        path = self.path(self.settings.local_path_storage_dir)
        return self.add(
            "prepare_local_path_dir",
            EnsureDirectory(path=path, mode=0o777),
            depends_on=(after,),
            precondition=DirectoryReady(path=path, mode=0o777),
            description="Create the node directory backing local-path volumes",
        )

    def control_plane(self, installed: str) -> None:
        s, tk = self.settings, self.tk
        kubectl = tk.kubectl
        admin_conf = self.path(ADMIN_CONF)

        init = ["kubeadm", "init", f"--pod-network-cidr={s.pod_network_cidr}"]
        init.append(f"--service-cidr={s.service_cidr}")
        if s.control_plane_ip:
            init.append(f"--apiserver-advertise-address={s.control_plane_ip}")
        self.add(
            "kubeadm_init",
            RunCommands(
                runner=tk.runner,
                commands=(("kubeadm", "config", "images", "pull"), tuple(init)),
            ),
            depends_on=(installed,),
            precondition=FileExists(path=admin_conf),
            # A half-initialised control plane needs `kubeadm reset`, not a blind retry.
            max_retries=0,
            description="Initialise the control plane",
        )

        self.add(
            "configure_kubeconfig",
            CopyFile(source=admin_conf, dest=self.path(s.kubeconfig_path)),
            depends_on=("kubeadm_init",),
            verify=ClusterReachable(kubectl=kubectl),
            description="Install the admin kubeconfig for kubectl",
        )

        diagnostics = (
            KubectlDiagnostics(kubectl=kubectl, invocations=FLANNEL_DIAGNOSTICS)
            if s.collect_diagnostics
            else None
        )
        flannel = self.path(s.manifest_dir) / "kube-flannel.yaml"
        self.add(
            "deploy_flannel",
            ActionChain(
                (
                    DownloadManifest(fetcher=tk.fetcher, url=s.flannel_manifest_url, dest=flannel),
                    KubectlCommands(kubectl=kubectl, invocations=(("apply", "-f", str(flannel)),)),
                )
            ),
            depends_on=("configure_kubeconfig",),
            verify=PodsReady(kubectl=kubectl, namespace="kube-flannel", selector="app=flannel"),
            on_failure=diagnostics,
            description="Deploy the Flannel CNI",
        )

        self.add(
            "wait_nodes_ready",
            KubectlCommands(kubectl=kubectl, invocations=(("get", "nodes", "-o", "wide"),)),
            depends_on=("deploy_flannel",),
            verify=NodesReady(kubectl=kubectl, expected=s.expected_nodes),
            on_failure=diagnostics,
            description=f"Wait for {s.expected_nodes} node(s) to report Ready",
        )

        network_ready = "wait_nodes_ready"
        if s.run_pod_network_test:
            network_ready = self.add(
                "verify_pod_network",
                KubectlCommands(
                    kubectl=kubectl,
                    invocations=(
                        ("delete", "pod", NETWORK_TEST_POD, "--ignore-not-found"),
                        (
                            "run",
                            NETWORK_TEST_POD,
                            f"--image={s.network_test_image}",
                            "--rm",
                            "-i",
                            "--restart=Never",
                            "--",
                            "sleep",
                            "10",
                        ),
                    ),
                ),
                depends_on=("wait_nodes_ready",),
                verify=ResourceAbsent(kubectl=kubectl, kind="pod", name=NETWORK_TEST_POD),
                on_failure=diagnostics,
                description="Schedule a throwaway pod to check scheduling and the pod network",
            )

        ingress = self.path(s.manifest_dir) / "ingress-nginx.yaml"
        self.add(
            "install_ingress_nginx",
            ActionChain(
                (
                    DownloadManifest(fetcher=tk.fetcher, url=s.ingress_manifest_url, dest=ingress),
                    KubectlCommands(
                        kubectl=kubectl,
                        invocations=(
                            ("apply", "-f", str(ingress)),
                            (
                                "scale",
                                "deployment",
                                INGRESS_SERVICE,
                                "-n",
                                INGRESS_NAMESPACE,
                                "--replicas=1",
                            ),
                        ),
                    ),
                )
            ),
            depends_on=(network_ready,),
            verify=PodsReady(
                kubectl=kubectl,
                namespace=INGRESS_NAMESPACE,
                selector="app.kubernetes.io/component=controller",
            ),
            description="Install a single-replica ingress-nginx controller",
        )

        self.add(
            "configure_ingress_nginx",
            KubectlCommands(
                kubectl=kubectl,
                invocations=(
                    (
                        "delete",
                        "validatingwebhookconfiguration",
                        INGRESS_WEBHOOK,
                        "--ignore-not-found",
                    ),
                    (
                        "patch",
                        "svc",
                        INGRESS_SERVICE,
                        "-n",
                        INGRESS_NAMESPACE,
                        "-p",
                        '{"spec":{"type":"NodePort"}}',
                    ),
                ),
            ),
            depends_on=("install_ingress_nginx",),
            precondition=AllOf(
                (
                    ResourceAbsent(
                        kubectl=kubectl, kind="validatingwebhookconfiguration", name=INGRESS_WEBHOOK
                    ),
                    ServiceHasType(
                        kubectl=kubectl,
                        namespace=INGRESS_NAMESPACE,
                        name=INGRESS_SERVICE,
                        service_type="NodePort",
                    ),
                )
            ),
            description="Drop the admission webhook and expose the controller on NodePorts",
        )

        if s.run_ingress_smoke_test:
            self.add(
                "ingress_smoke_test",
                KubectlCommands(
                    kubectl=kubectl,
                    invocations=(
                        ("delete", "ingress", "test-ingress", "--ignore-not-found"),
                        ("delete", "svc", "test-app", "--ignore-not-found"),
                        ("delete", "deployment", "test-app", "--ignore-not-found"),
                        ("create", "deployment", "test-app", "--image=nginx:alpine"),
                        ("expose", "deployment", "test-app", "--port=80"),
                        ("apply", "-f", "-"),
                    ),
                    input=SMOKE_TEST_INGRESS,
                ),
                depends_on=("configure_ingress_nginx",),
                verify=IngressReachable(kubectl=kubectl, fetcher=tk.fetcher),
                description="Route a throwaway app through the ingress and probe it",
            )
            self.add(
                "ingress_smoke_test_cleanup",
                KubectlCommands(
                    kubectl=kubectl,
                    invocations=(
                        ("delete", "ingress", "test-ingress", "--ignore-not-found"),
                        ("delete", "svc", "test-app", "--ignore-not-found"),
                        ("delete", "deployment", "test-app", "--ignore-not-found"),
                    ),
                ),
                depends_on=("ingress_smoke_test",),
                description="Remove the ingress smoke test resources",
            )

        storage = self.path(s.manifest_dir) / "local-path-storage.yaml"
        self.add(
            "install_local_path_storage",
            ActionChain(
                (
                    DownloadManifest(
                        fetcher=tk.fetcher, url=s.local_path_manifest_url, dest=storage
                    ),
                    KubectlCommands(kubectl=kubectl, invocations=(("apply", "-f", str(storage)),)),
                )
            ),
            depends_on=(network_ready,),
            verify=PodsReady(
                kubectl=kubectl,
                namespace="local-path-storage",
                selector="app=local-path-provisioner",
            ),
            description="Install the local-path provisioner",
        )

        self.add(
            "set_default_storage_class",
            KubectlCommands(
                kubectl=kubectl,
                invocations=(
                    (
                        "patch",
                        "storageclass",
                        "local-path",
                        "-p",
                        '{"metadata":{"annotations":{"storageclass.kubernetes.io/'
                        'is-default-class":"true"}}}',
                    ),
                ),
            ),
            depends_on=("install_local_path_storage",),
            precondition=DefaultStorageClass(kubectl=kubectl, name="local-path"),
            verify=DefaultStorageClass(kubectl=kubectl, name="local-path"),
            description="Make local-path the default StorageClass",
        )

        self.local_path_dir(installed)

    def worker(self, installed: str) -> None:
        s, tk = self.settings, self.tk
        if not s.join_command or not s.join_command.strip():
            raise ConfigError(
                "The worker role needs a join command: set KUBE_BOOTSTRAP_JOIN_COMMAND to the "
                "`kubeadm join ...` line printed by the control plane"
            )
        try:
            argv = tuple(shlex.split(s.join_command))
        except ValueError as e:
            raise ConfigError(f"Join command cannot be parsed: {e}") from e
        if argv[:2] != ("kubeadm", "join"):
            raise ConfigError(f"Join command must start with `kubeadm join`: {s.join_command!r}")

        self.add(
            "kubeadm_join",
            RunCommands(runner=tk.runner, commands=(argv,)),
            depends_on=(installed,),
            precondition=FileExists(path=self.path(KUBELET_CONF)),
            verify=CommandSucceeds(
                runner=tk.runner, commands=(("systemctl", "is-active", "--quiet", "kubelet"),)
            ),
            max_retries=0,
            description="Join this node to the cluster",
        )

        self.local_path_dir(installed)


def build_role_steps(
    role: Role, settings: BootstrapSettings, toolkit: Toolkit | None = None
) -> list[Step]:
    """Return the declared steps for `role`.

    Raises:
        ConfigError: if the settings cannot produce a graph for the role.
    """

    return _Catalog(role, settings, toolkit or Toolkit.from_settings(settings)).build()
