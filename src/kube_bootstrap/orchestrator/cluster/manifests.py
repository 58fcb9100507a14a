"""HTTP access for manifests and ingress probes.

Manifests are downloaded through the configured corporate proxy (if any) and
stored locally before `kubectl apply`, so the cluster itself never needs
outbound access for them.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import requests

from kube_bootstrap.orchestrator.workflow.steps import ActionResult, CheckResult, StepContext

from .kubectl import Kubectl, KubectlError, node_internal_ip, service_node_port

logger = logging.getLogger(__name__)


@dataclass
class ManifestFetcher:
    proxies: dict[str, str] = field(default_factory=dict)
    timeout: float = 30.0
    session: requests.Session = field(default_factory=requests.Session)

    def __post_init__(self) -> None:
        # Only the configured proxies apply; ambient proxy variables are ignored.
        self.session.trust_env = False

    def fetch(self, url: str, dest: Path) -> Path:
        """Download `url` to `dest` atomically. Raises `requests.RequestException`."""

        logger.info("Downloading manifest", extra={"url": url, "dest": str(dest)})
        resp = self.session.get(url, proxies=self.proxies or None, timeout=self.timeout)
        resp.raise_for_status()

        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp = dest.with_name(f".{dest.name}.part")
        tmp.write_bytes(resp.content)
        os.replace(tmp, dest)
        return dest

    def get(self, url: str, *, timeout: float | None = None) -> requests.Response:
        # Probes target NodePorts inside the network and go direct.
        return self.session.get(url, timeout=timeout or self.timeout)

    def close(self) -> None:
        self.session.close()


@dataclass(frozen=True, slots=True)
class DownloadManifest:
    fetcher: ManifestFetcher
    url: str
    dest: Path

    def execute(self, _ctx: StepContext) -> ActionResult:
        try:
            self.fetcher.fetch(self.url, self.dest)
        except requests.RequestException as e:
            return ActionResult(ok=False, message=f"failed to download {self.url}: {e}")
        return ActionResult(ok=True, message=f"downloaded {self.dest.name}")


@dataclass(frozen=True, slots=True)
class IngressReachable:
    """Satisfied when the ingress answers HTTP on its NodePort.

    The node IP and the NodePort are resolved on every poll since the service
    may still be converging.
    """

    kubectl: Kubectl
    fetcher: ManifestFetcher
    namespace: str = "ingress-nginx"
    service: str = "ingress-nginx-controller"
    port_name: str = "http"
    path: str = "/"

    def evaluate(self, ctx: StepContext) -> CheckResult:
        try:
            node_ip = node_internal_ip(self.kubectl, ctx)
            port = service_node_port(
                self.kubectl,
                ctx,
                namespace=self.namespace,
                name=self.service,
                port_name=self.port_name,
            )
        except (KubectlError, ValueError) as e:
            return CheckResult(ok=False, message=str(e))
        if node_ip is None or port is None:
            return CheckResult(ok=False, message="ingress NodePort not assigned yet")

        url = f"http://{node_ip}:{port}{self.path}"
        try:
            resp = self.fetcher.get(url, timeout=ctx.timeout)
        except requests.RequestException as e:
            return CheckResult(ok=False, message=f"{url}: {e}")
        if resp.status_code >= 500:
            return CheckResult(ok=False, message=f"{url} returned {resp.status_code}")
        return CheckResult(ok=True, message=f"{url} returned {resp.status_code}")
