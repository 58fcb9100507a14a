"""kubectl-backed actions and readiness checks.

Checks here are the "side-effecting reads" polled by verification gates: node
readiness, pod readiness by label selector, StorageClass defaults and service
exposure.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from kube_bootstrap.orchestrator.workflow.errors import ActionError
from kube_bootstrap.orchestrator.workflow.steps import ActionResult, CheckResult, StepContext

from .shell import CommandResult, Runner

logger = logging.getLogger(__name__)

DEFAULT_CLASS_ANNOTATION = "storageclass.kubernetes.io/is-default-class"


class KubectlError(ActionError):
    def __init__(self, result: CommandResult) -> None:
        self.result = result
        super().__init__(result.describe())


@dataclass(frozen=True, slots=True)
class Kubectl:
    runner: Runner
    kubeconfig: Path | None = None

    def argv(self, *args: str) -> tuple[str, ...]:
        base: tuple[str, ...] = ("kubectl",)
        if self.kubeconfig is not None:
            base += ("--kubeconfig", str(self.kubeconfig))
        return base + args

    def run(self, *args: str, ctx: StepContext, input: str | None = None) -> CommandResult:
        return self.runner.run(
            self.argv(*args), timeout=ctx.timeout, input=input, cancel_event=ctx.cancel_event
        )

    def get_json(self, *args: str, ctx: StepContext) -> dict[str, Any]:
        result = self.run("get", *args, "-o", "json", ctx=ctx)
        if not result.ok:
            raise KubectlError(result)
        data = json.loads(result.stdout or "{}")
        if not isinstance(data, dict):
            raise ValueError("kubectl returned a non-object JSON document")
        return data


def _conditions(obj: dict[str, Any]) -> dict[str, str]:
    conditions = obj.get("status", {}).get("conditions", []) or []
    return {c.get("type", ""): c.get("status", "") for c in conditions if isinstance(c, dict)}


def _name(obj: dict[str, Any]) -> str:
    return str(obj.get("metadata", {}).get("name", "?"))


@dataclass(frozen=True, slots=True)
class KubectlCommands:
    """Run a sequence of kubectl invocations, failing on the first error."""

    kubectl: Kubectl
    invocations: tuple[tuple[str, ...], ...]
    input: str | None = None

    def execute(self, ctx: StepContext) -> ActionResult:
        for args in self.invocations:
            result = self.kubectl.run(*args, ctx=ctx, input=self.input)
            if not result.ok:
                return ActionResult(ok=False, message=result.describe())
        return ActionResult(ok=True, message=f"ran {len(self.invocations)} kubectl command(s)")


@dataclass(frozen=True, slots=True)
class ClusterReachable:
    kubectl: Kubectl

    def evaluate(self, ctx: StepContext) -> CheckResult:
        result = self.kubectl.run("cluster-info", ctx=ctx)
        if not result.ok:
            return CheckResult(ok=False, message=f"cannot reach the cluster: {result.describe()}")
        return CheckResult(ok=True, message="cluster reachable")


@dataclass(frozen=True, slots=True)
class NodesReady:
    """Satisfied when at least `expected` nodes report Ready."""

    kubectl: Kubectl
    expected: int = 1

    def evaluate(self, ctx: StepContext) -> CheckResult:
        try:
            nodes = self.kubectl.get_json("nodes", ctx=ctx).get("items", [])
        except (KubectlError, ValueError) as e:
            return CheckResult(ok=False, message=str(e))

        ready = [_name(n) for n in nodes if _conditions(n).get("Ready") == "True"]
        message = f"{len(ready)}/{len(nodes)} nodes Ready (need {self.expected})"
        return CheckResult(ok=len(ready) >= self.expected, message=message)


@dataclass(frozen=True, slots=True)
class PodsReady:
    """Satisfied when at least one pod matches and every matching pod is Ready."""

    kubectl: Kubectl
    namespace: str
    selector: str

    def evaluate(self, ctx: StepContext) -> CheckResult:
        try:
            pods = self.kubectl.get_json(
                "pods", "-n", self.namespace, "-l", self.selector, ctx=ctx
            ).get("items", [])
        except (KubectlError, ValueError) as e:
            return CheckResult(ok=False, message=str(e))

        if not pods:
            return CheckResult(
                ok=False, message=f"no pods match {self.selector} in {self.namespace}"
            )
        not_ready = [_name(p) for p in pods if _conditions(p).get("Ready") != "True"]
        if not_ready:
            return CheckResult(ok=False, message=f"pods not Ready: {', '.join(not_ready)}")
        return CheckResult(ok=True, message=f"{len(pods)} pod(s) Ready in {self.namespace}")


@dataclass(frozen=True, slots=True)
class DefaultStorageClass:
    kubectl: Kubectl
    name: str

    def evaluate(self, ctx: StepContext) -> CheckResult:
        try:
            classes = self.kubectl.get_json("storageclass", ctx=ctx).get("items", [])
        except (KubectlError, ValueError) as e:
            return CheckResult(ok=False, message=str(e))

        defaults = [
            _name(sc)
            for sc in classes
            if (sc.get("metadata", {}).get("annotations") or {}).get(DEFAULT_CLASS_ANNOTATION)
            == "true"
        ]
        if self.name in defaults:
            return CheckResult(ok=True, message=f"{self.name} is the default StorageClass")
        return CheckResult(ok=False, message=f"default StorageClass is {defaults or 'unset'}")


@dataclass(frozen=True, slots=True)
class ServiceHasType:
    kubectl: Kubectl
    namespace: str
    name: str
    service_type: str

    def evaluate(self, ctx: StepContext) -> CheckResult:
        try:
            svc = self.kubectl.get_json("service", self.name, "-n", self.namespace, ctx=ctx)
        except (KubectlError, ValueError) as e:
            return CheckResult(ok=False, message=str(e))
        actual = svc.get("spec", {}).get("type")
        return CheckResult(
            ok=actual == self.service_type,
            message=f"service {self.namespace}/{self.name} type is {actual}",
        )


@dataclass(frozen=True, slots=True)
class ResourceAbsent:
    kubectl: Kubectl
    kind: str
    name: str

    def evaluate(self, ctx: StepContext) -> CheckResult:
        result = self.kubectl.run("get", self.kind, self.name, "--ignore-not-found", ctx=ctx)
        if not result.ok:
            return CheckResult(ok=False, message=result.describe())
        if result.stdout.strip():
            return CheckResult(ok=False, message=f"{self.kind}/{self.name} still exists")
        return CheckResult(ok=True, message=f"{self.kind}/{self.name} absent")


def node_internal_ip(kubectl: Kubectl, ctx: StepContext) -> str | None:
    nodes = kubectl.get_json("nodes", ctx=ctx).get("items", [])
    for node in nodes:
        for address in node.get("status", {}).get("addresses", []) or []:
            if address.get("type") == "InternalIP":
                return str(address.get("address"))
    return None


def service_node_port(
    kubectl: Kubectl, ctx: StepContext, *, namespace: str, name: str, port_name: str
) -> int | None:
    svc = kubectl.get_json("service", name, "-n", namespace, ctx=ctx)
    for port in svc.get("spec", {}).get("ports", []) or []:
        if port.get("name") == port_name and port.get("nodePort"):
            return int(port["nodePort"])
    return None


@dataclass(frozen=True, slots=True)
class KubectlDiagnostics:
    """Log the output of read-only kubectl commands. Never fails."""

    kubectl: Kubectl
    invocations: tuple[tuple[str, ...], ...]

    def execute(self, ctx: StepContext) -> ActionResult:
        for args in self.invocations:
            result = self.kubectl.run(*args, ctx=ctx)
            logger.warning(
                "Diagnostics",
                extra={
                    "step_id": ctx.step_id,
                    "command": " ".join(("kubectl", *args)),
                    "returncode": result.returncode,
                    "output": (result.stdout or result.stderr).strip(),
                },
            )
        return ActionResult(ok=True, message=f"collected {len(self.invocations)} diagnostic(s)")
