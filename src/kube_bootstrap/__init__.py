"""kube-bootstrap.

Declarative bootstrap of a small on-premises Kubernetes cluster:
- provisioning work expressed as explicit, dependency-ordered steps
- retries, verification gates and a persisted, resumable run state
- configuration loaded from `.env` and structured logging
"""

__version__ = "0.1.0"

from kube_bootstrap.orchestrator.config import BootstrapSettings

__all__ = ["__version__", "BootstrapSettings"]
