"""Cluster provisioning actions, checks and role catalogs.

The workflow engine knows nothing about Kubernetes; everything that touches the
host (`dnf`, `systemctl`, `/etc` files) or the cluster (`kubeadm`, `kubectl`,
manifest downloads) is expressed here as `Action`/`Check` objects.
"""

from .catalog import Toolkit, build_role_steps
from .kubectl import Kubectl, KubectlError
from .manifests import ManifestFetcher
from .shell import CommandResult, CommandRunner, Runner

__all__ = [
    "CommandResult",
    "CommandRunner",
    "Kubectl",
    "KubectlError",
    "ManifestFetcher",
    "Runner",
    "Toolkit",
    "build_role_steps",
]
