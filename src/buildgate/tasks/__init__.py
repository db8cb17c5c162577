"""BuildGate background tasks."""

from buildgate.tasks.dispatch import JobDispatcher
from buildgate.tasks.sweep import recover_stale_jobs, start_recovery_sweep, stop_recovery_sweep

__all__ = ["JobDispatcher", "recover_stale_jobs", "start_recovery_sweep", "stop_recovery_sweep"]
