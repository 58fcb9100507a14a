"""Unit tests for the role step catalogs."""

from __future__ import annotations

from pathlib import Path

import pytest

from kube_bootstrap.orchestrator.bootstrap import Orchestrator, RunOptions, RunOutcome
from kube_bootstrap.orchestrator.cluster import Kubectl, ManifestFetcher, Toolkit, build_role_steps
from kube_bootstrap.orchestrator.cluster.catalog import kubernetes_repo, proxy_dropin
from kube_bootstrap.orchestrator.config import BootstrapSettings
from kube_bootstrap.orchestrator.workflow import (
    ConfigError,
    Role,
    SkipReason,
    StepContext,
    StepGraph,
)

JOIN = (
    "kubeadm join 10.0.0.1:6443 --token abcdef.0123456789abcdef "
    "--discovery-token-ca-cert-hash sha256:0123"
)


@pytest.fixture
def toolkit(fake_runner, fake_session) -> Toolkit:
    return Toolkit(
        runner=fake_runner,
        kubectl=Kubectl(runner=fake_runner),
        fetcher=ManifestFetcher(session=fake_session),
    )


def _settings(base: BootstrapSettings, **overrides) -> BootstrapSettings:
    return BootstrapSettings(_env_file=None, **{**base.model_dump(), **overrides})


def _graph(role: Role, settings: BootstrapSettings, toolkit: Toolkit) -> StepGraph:
    return StepGraph.build(build_role_steps(role, settings, toolkit))


def test_control_plane_graph(settings: BootstrapSettings, toolkit: Toolkit) -> None:
    ids = [s.id for s in _graph(Role.CONTROL_PLANE, settings, toolkit).topological_order()]

    for step_id in (
        "disable_swap",
        "install_containerd",
        "kubeadm_init",
        "deploy_flannel",
        "verify_pod_network",
        "install_ingress_nginx",
        "configure_ingress_nginx",
        "install_local_path_storage",
        "set_default_storage_class",
        "prepare_local_path_dir",
    ):
        assert step_id in ids
    assert "kubeadm_join" not in ids
    assert "ingress_smoke_test" not in ids
    assert "configure_runtime_proxy" not in ids
    assert "configure_hosts" not in ids
    assert "test_node_connectivity" not in ids

    def before(a: str, b: str) -> bool:
        return ids.index(a) < ids.index(b)

    assert before("disable_swap", "enable_kubelet")
    assert before("configure_sysctl", "enable_kubelet")
    assert before("start_containerd", "enable_kubelet")
    assert before("verify_installation", "kubeadm_init")
    assert before("configure_kubeconfig", "deploy_flannel")
    assert before("wait_nodes_ready", "install_local_path_storage")
    assert before("wait_nodes_ready", "verify_pod_network")
    assert before("verify_pod_network", "install_ingress_nginx")


def test_worker_graph(settings: BootstrapSettings, toolkit: Toolkit) -> None:
    graph = _graph(Role.WORKER, _settings(settings, join_command=JOIN), toolkit)

    assert "kubeadm_join" in graph
    assert "kubeadm_init" not in graph
    assert "deploy_flannel" not in graph
    assert graph.get("kubeadm_join").depends_on == ("verify_installation",)
    assert graph.get("kubeadm_join").max_retries == 0


@pytest.mark.parametrize(
    "join_command",
    [None, "  ", "echo kubeadm join", "kubeadm join 10.0.0.1:6443 --token 'abc"],
)
def test_worker_requires_a_join_command(
    settings: BootstrapSettings, toolkit: Toolkit, join_command: str | None
) -> None:
    with pytest.raises(ConfigError):
        build_role_steps(Role.WORKER, _settings(settings, join_command=join_command), toolkit)


def test_firewall_ports_depend_on_role(settings: BootstrapSettings, toolkit: Toolkit) -> None:
    def ports(role: Role) -> set[str]:
        graph = _graph(role, _settings(settings, join_command=JOIN), toolkit)
        commands = graph.get("configure_firewall").action.commands
        return {c[-1].removeprefix("--add-port=") for c in commands if c[1] == "--permanent"}

    control_plane, worker = ports(Role.CONTROL_PLANE), ports(Role.WORKER)

    assert {"6443/tcp", "2379-2380/tcp"} <= control_plane
    assert "6443/tcp" not in worker
    assert {"10250/tcp", "8472/udp", "30000-32767/tcp"} <= worker <= control_plane


def test_optional_steps(settings: BootstrapSettings, toolkit: Toolkit) -> None:
    configured = _settings(
        settings,
        configure_firewall=False,
        control_plane_ip="10.0.0.1",
        worker_ip="10.0.0.2",
        https_proxy="http://proxy:3128",
        run_ingress_smoke_test=True,
    )

    graph = _graph(Role.CONTROL_PLANE, configured, toolkit)

    assert "configure_firewall" not in graph
    assert "configure_hosts" in graph
    connectivity = graph.get("test_node_connectivity")
    assert connectivity.depends_on == ("configure_hosts",)
    assert connectivity.action.peers == (("k8s-master", (22,)), ("k8s-worker", (22,)))
    assert not connectivity.action.strict
    assert "configure_runtime_proxy" in graph
    assert "configure_runtime_proxy" in graph.get("start_containerd").depends_on
    assert graph.get("ingress_smoke_test_cleanup").depends_on == ("ingress_smoke_test",)
    init = graph.get("kubeadm_init").action.commands[-1]
    assert "--apiserver-advertise-address=10.0.0.1" in init


def test_pod_network_checks(
    settings: BootstrapSettings, toolkit: Toolkit, fake_runner
) -> None:
    graph = _graph(Role.CONTROL_PLANE, settings, toolkit)
    ctx = StepContext(step_id="deploy_flannel", timeout=5)

    smoke = graph.get("verify_pod_network")
    assert smoke.action.invocations[-1][:2] == ("run", "kube-bootstrap-network-test")
    assert "--image=busybox" in smoke.action.invocations[-1]
    assert graph.get("install_ingress_nginx").depends_on == ("verify_pod_network",)

    assert graph.get("deploy_flannel").on_failure.execute(ctx).ok
    assert fake_runner.ran("kubectl", "describe", "pods", "-n", "kube-flannel")
    assert fake_runner.ran("kubectl", "get", "events", "-n", "kube-flannel")

    quiet = _graph(
        Role.CONTROL_PLANE,
        _settings(settings, run_pod_network_test=False, collect_diagnostics=False),
        toolkit,
    )
    assert "verify_pod_network" not in quiet
    assert quiet.get("install_ingress_nginx").depends_on == ("wait_nodes_ready",)
    assert quiet.get("deploy_flannel").on_failure is None


def test_rendered_files() -> None:
    repo = kubernetes_repo("v1.29")
    assert "baseurl=https://pkgs.k8s.io/core:/stable:/v1.29/rpm/" in repo
    assert "gpgkey=https://pkgs.k8s.io/core:/stable:/v1.29/rpm/repodata/repomd.xml.key" in repo

    dropin = proxy_dropin(
        BootstrapSettings(_env_file=None, https_proxy="http://proxy:3128", no_proxy="10.0.0.0/8")
    )
    assert dropin == (
        "[Service]\n"
        'Environment="HTTPS_PROXY=http://proxy:3128"\n'
        'Environment="NO_PROXY=10.0.0.0/8"\n'
    )


def test_toolkit_from_settings(settings: BootstrapSettings, host_root: Path) -> None:
    toolkit = Toolkit.from_settings(_settings(settings, http_proxy="http://proxy:3128"))

    assert toolkit.runner.env["HTTP_PROXY"] == "http://proxy:3128"
    assert toolkit.kubectl.kubeconfig == host_root / "root" / ".kube" / "config"
    assert toolkit.fetcher.proxies == {"http": "http://proxy:3128", "https": "http://proxy:3128"}
    toolkit.close()


def test_worker_bootstrap_end_to_end(
    settings: BootstrapSettings, toolkit: Toolkit, fake_runner, host_root: Path
) -> None:
    worker = _settings(
        settings,
        join_command=JOIN,
        control_plane_ip="10.0.0.1",
        worker_ip="10.0.0.2",
        https_proxy="http://proxy:3128",
    )
    fake_runner.respond("containerd", "config", "default", stdout="  SystemdCgroup = false\n")
    orch = Orchestrator(
        worker, steps_factory=lambda role, s: build_role_steps(role, s, toolkit)
    )

    result = orch.run(Role.WORKER, RunOptions(run_id="worker-1"))

    assert result.outcome == RunOutcome.SUCCEEDED, result.error
    hosts = (host_root / "etc" / "hosts").read_text(encoding="utf-8")
    assert "127.0.0.1 k8s-worker" in hosts
    assert "10.0.0.1 k8s-master" in hosts
    assert "SystemdCgroup = true" in (host_root / "etc/containerd/config.toml").read_text(
        encoding="utf-8"
    )
    assert (host_root / "etc/sysctl.d/k8s.conf").is_file()
    assert (host_root / "etc/systemd/system/kubelet.service.d/http-proxy.conf").is_file()
    assert (host_root / "opt/local-path-provisioner").is_dir()
    assert fake_runner.ran("kubeadm", "join", "10.0.0.1:6443")
    # Already satisfied on this host, so never re-installed.
    assert not fake_runner.ran("dnf", "install", "-y", "containerd.io")
    assert result.state.record("disable_swap").skip_reason == SkipReason.PRECONDITION_SATISFIED

    calls_before = len(fake_runner.calls)
    again = orch.run(Role.WORKER, RunOptions(run_id="worker-1"))

    assert again.outcome == RunOutcome.SUCCEEDED
    assert len(fake_runner.calls) == calls_before
    assert all(r.skip_reason == SkipReason.ALREADY_SUCCEEDED for r in again.state.records)
