"""BuildGate database layer."""

from buildgate.db.base import (
    Base,
    close_db,
    configure,
    create_engine,
    create_session_factory,
    get_session,
    get_session_factory,
    init_db,
)
from buildgate.db.tables import (
    JobTable,
    PrincipalPlanTable,
    QuotaAdmissionTable,
    QuotaRecordTable,
    RequestTable,
    ResultTable,
    SandboxLeaseTable,
    StepTraceTable,
)

__all__ = [
    "Base",
    "close_db",
    "configure",
    "create_engine",
    "create_session_factory",
    "get_session",
    "get_session_factory",
    "init_db",
    "JobTable",
    "PrincipalPlanTable",
    "QuotaAdmissionTable",
    "QuotaRecordTable",
    "RequestTable",
    "ResultTable",
    "SandboxLeaseTable",
    "StepTraceTable",
]
