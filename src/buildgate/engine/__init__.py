"""BuildGate engine - admission, sandboxes, agent steps, and results."""

from buildgate.engine.errors import (
    BuildGateError,
    InvalidStateTransition,
    JobNotFound,
    LeaseExpired,
    ProvisionFailed,
    QuotaExceededAtProvider,
    RequestNotFound,
    TransientPersistenceError,
)
from buildgate.engine.leases import SandboxLeaseManager
from buildgate.engine.orchestrator import GenerationOrchestrator
from buildgate.engine.quota import QuotaLedger
from buildgate.engine.results import ResultStore
from buildgate.engine.steps import AgentStepRunner
from buildgate.engine.tools import SandboxToolExecutor

__all__ = [
    "AgentStepRunner",
    "BuildGateError",
    "GenerationOrchestrator",
    "InvalidStateTransition",
    "JobNotFound",
    "LeaseExpired",
    "ProvisionFailed",
    "QuotaExceededAtProvider",
    "QuotaLedger",
    "RequestNotFound",
    "ResultStore",
    "SandboxLeaseManager",
    "SandboxToolExecutor",
    "TransientPersistenceError",
]
