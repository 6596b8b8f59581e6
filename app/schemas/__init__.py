from app.schemas.pending import AppendTrialAction, CreateAction, FinalizeAction, PendingAction
from app.schemas.results import (
    AppendTrialRequest,
    CreatedSession,
    CreateSessionRequest,
    FinalizeSessionRequest,
    ResultPayload,
    ResultSummary,
    SelfTestResult,
    SessionRecord,
    SessionWithTrials,
    StandardScore,
    SyncStatus,
    TrialResult,
)

__all__ = [
    "AppendTrialAction",
    "AppendTrialRequest",
    "CreateAction",
    "CreateSessionRequest",
    "CreatedSession",
    "FinalizeAction",
    "FinalizeSessionRequest",
    "PendingAction",
    "ResultPayload",
    "ResultSummary",
    "SelfTestResult",
    "SessionRecord",
    "SessionWithTrials",
    "StandardScore",
    "SyncStatus",
    "TrialResult",
]
