"""Configuration for the bootstrap orchestrator.

Configuration is loaded from:
- environment variables prefixed with `KUBE_BOOTSTRAP_`
- and a local `.env` file (if present)

Everything the original bootstrap scripts asked for interactively (node type,
node IPs, the worker join command) or hard-coded as globals (proxy, CIDRs,
manifest URLs) is an explicit setting here. Node role and run id are passed on
the command line.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BootstrapSettings(BaseSettings):
    """Settings for a bootstrap run.

    Notes:
        Pydantic-settings supports overriding the env file in tests via:
        `BootstrapSettings(_env_file=path_to_env)`.
    """

    # Logging
    log_level: str = Field(default="INFO", description="Root logging level")
    log_format: Literal["json", "text"] = Field(
        default="json",
        description="json: one structured record per line; text: coloured status lines",
    )
    log_color: bool = Field(default=True, description="Colourise text logs on a terminal")

    # State
    state_dir: Path = Field(
        default=Path(".bootstrap_state"),
        description="Directory where run state and run locks are persisted",
    )
    root_dir: Path = Field(
        default=Path("/"),
        description="Filesystem root for host configuration files (useful in chroots)",
    )

    # Nodes
    control_plane_hostname: str = Field(default="k8s-master")
    worker_hostname: str = Field(default="k8s-worker")
    control_plane_ip: str | None = Field(default=None, description="Control-plane node IP")
    worker_ip: str | None = Field(default=None, description="Worker node IP")
    expected_nodes: int = Field(
        default=1, ge=1, description="Nodes that must report Ready after the CNI is deployed"
    )
    join_command: str | None = Field(
        default=None,
        description="Full `kubeadm join ...` command printed by the control plane (worker only)",
    )

    # Network
    pod_network_cidr: str = Field(default="10.244.0.0/16")
    service_cidr: str = Field(default="10.96.0.0/12")
    http_proxy: str | None = Field(default=None)
    https_proxy: str | None = Field(default=None)
    no_proxy: str | None = Field(default=None)
    configure_firewall: bool = Field(default=True, description="Open Kubernetes ports")
    require_node_connectivity: bool = Field(
        default=False,
        description="Fail the connectivity test when a peer node is unreachable (else warn)",
    )

    # Packages and manifests
    system_update: bool = Field(default=False, description="Run `dnf update -y` first")
    base_packages: list[str] = Field(
        default_factory=lambda: ["curl", "wget", "vim", "net-tools", "telnet", "bind-utils"]
    )
    kubernetes_version: str = Field(default="v1.29", description="pkgs.k8s.io minor stream")
    docker_repo_url: str = Field(
        default="https://download.docker.com/linux/centos/docker-ce.repo",
    )
    flannel_manifest_url: str = Field(
        default=(
            "https://raw.githubusercontent.com/flannel-io/flannel/v0.25.5/"
            "Documentation/kube-flannel.yml"
        ),
    )
    ingress_manifest_url: str = Field(
        default=(
            "https://raw.githubusercontent.com/kubernetes/ingress-nginx/controller-v1.8.1/"
            "deploy/static/provider/baremetal/deploy.yaml"
        ),
    )
    local_path_manifest_url: str = Field(
        default=(
            "https://raw.githubusercontent.com/rancher/local-path-provisioner/master/"
            "deploy/local-path-storage.yaml"
        ),
    )
    manifest_dir: Path = Field(
        default=Path("/var/lib/kube-bootstrap/manifests"),
        description="Where downloaded manifests are stored before `kubectl apply`",
    )
    local_path_storage_dir: Path = Field(default=Path("/opt/local-path-provisioner"))
    kubeconfig_path: Path = Field(
        default=Path("/root/.kube/config"),
        description="Kubeconfig used by kubectl once the control plane is initialised",
    )
    run_ingress_smoke_test: bool = Field(
        default=False, description="Deploy a throwaway app and probe it through the ingress"
    )
    run_pod_network_test: bool = Field(
        default=True, description="Schedule a throwaway pod once the nodes are Ready"
    )
    network_test_image: str = Field(default="busybox")
    collect_diagnostics: bool = Field(
        default=True, description="Log Flannel and node diagnostics when the pod network fails"
    )

    # Execution policy
    step_max_retries: int = Field(default=2, ge=0)
    retry_base_delay_seconds: float = Field(default=2.0, ge=0)
    retry_max_delay_seconds: float = Field(default=60.0, ge=0)
    command_timeout_seconds: float = Field(default=600.0, gt=0)
    verify_timeout_seconds: float = Field(default=300.0, ge=0)
    verify_interval_seconds: float = Field(default=5.0, gt=0)
    http_timeout_seconds: float = Field(default=30.0, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="KUBE_BOOTSTRAP_",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def _normalise_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {value!r}")
        return level

    @model_validator(mode="after")
    def _check_retry_bounds(self) -> BootstrapSettings:
        if self.retry_max_delay_seconds < self.retry_base_delay_seconds:
            raise ValueError("retry_max_delay_seconds must be >= retry_base_delay_seconds")
        return self

    @property
    def proxy_configured(self) -> bool:
        return bool(self.http_proxy or self.https_proxy)

    def proxy_env(self) -> dict[str, str]:
        """Proxy variables exported to every external command."""

        env: dict[str, str] = {}
        for name, value in (
            ("HTTP_PROXY", self.http_proxy),
            ("HTTPS_PROXY", self.https_proxy),
            ("NO_PROXY", self.no_proxy),
        ):
            if value:
                env[name] = value
                env[name.lower()] = value
        return env

    def requests_proxies(self) -> dict[str, str]:
        proxies: dict[str, str] = {}
        if self.http_proxy:
            proxies["http"] = self.http_proxy
        if self.https_proxy or self.http_proxy:
            proxies["https"] = self.https_proxy or self.http_proxy or ""
        return proxies

    def host_path(self, path: str | Path) -> Path:
        """Resolve an absolute host path under `root_dir`."""

        return self.root_dir / str(path).lstrip("/")
