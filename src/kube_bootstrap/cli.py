"""Console entrypoint.

The command line itself is implemented in `kube_bootstrap.orchestrator.main`.
"""

from __future__ import annotations

from kube_bootstrap.orchestrator.main import main

__all__ = ["main"]


if __name__ == "__main__":
    raise SystemExit(main())
