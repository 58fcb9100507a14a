"""Explicit bootstrap workflow engine.

This package introduces first-class types for:
- Steps (idempotent provisioning units with pre/post checks)
- A dependency graph with deterministic ordering
- A verification gate (poll until satisfied or timed out)
- A persisted, resumable run state and its store
- The executor that walks the graph

Cluster-specific steps live in `kube_bootstrap.orchestrator.cluster`.
"""

from .errors import (
    ActionError,
    BootstrapError,
    ConfigError,
    CycleError,
    DuplicateStepError,
    IllegalTransitionError,
    LockContentionError,
    RunInterrupted,
    StateStoreError,
    UnknownDependencyError,
    VerificationTimeoutError,
)
from .executor import Executor, RetryPolicy
from .gate import VerificationGate
from .graph import StepGraph
from .state_machine import (
    ExecutionRecord,
    Role,
    RunState,
    RunStatus,
    SkipReason,
    StepStatus,
)
from .steps import (
    Action,
    ActionChain,
    ActionResult,
    AllOf,
    Check,
    CheckResult,
    FnAction,
    FnCheck,
    Step,
    StepContext,
)
from .store import StateStore

__all__ = [
    "Action",
    "ActionChain",
    "ActionError",
    "ActionResult",
    "AllOf",
    "BootstrapError",
    "Check",
    "CheckResult",
    "ConfigError",
    "CycleError",
    "DuplicateStepError",
    "ExecutionRecord",
    "Executor",
    "FnAction",
    "FnCheck",
    "IllegalTransitionError",
    "LockContentionError",
    "RetryPolicy",
    "Role",
    "RunInterrupted",
    "RunState",
    "RunStatus",
    "SkipReason",
    "StateStore",
    "StateStoreError",
    "Step",
    "StepContext",
    "StepGraph",
    "StepStatus",
    "UnknownDependencyError",
    "VerificationGate",
    "VerificationTimeoutError",
]
