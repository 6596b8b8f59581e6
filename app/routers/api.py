"""API routes: JSON for game sessions, trials, finalize, self-test and sync status."""
from typing import Annotated

from fastapi import APIRouter, Depends, Request, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.schemas.results import (
    AppendTrialRequest,
    CreatedSession,
    CreateSessionRequest,
    FinalizeSessionRequest,
    ResultPayload,
    SelfTestResult,
    SessionWithTrials,
    SyncStatus,
)
from app.services.identity import current_access_token
from app.services.results import ResultsService

bearer = HTTPBearer(auto_error=False)


async def bind_access_token(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer)],
) -> None:
    """Expose the caller's bearer token to the identity resolver for this request."""
    current_access_token.set(credentials.credentials if credentials else None)


def get_results_service(request: Request) -> ResultsService:
    return request.app.state.results_service


Service = Annotated[ResultsService, Depends(get_results_service)]

router = APIRouter(prefix="/api", tags=["api"], dependencies=[Depends(bind_access_token)])


@router.post("/sessions", response_model=CreatedSession)
async def create_session(body: CreateSessionRequest, service: Service):
    """Start a game session (returns immediately even when the store is offline)."""
    return await service.create_session(**body.model_dump())


@router.post("/sessions/{session_id}/trials", status_code=204)
async def append_trial(session_id: str, body: AppendTrialRequest, service: Service):
    await service.append_trial(session_id, body.index, body.trial_data, body.score)
    return Response(status_code=204)


@router.post("/sessions/{session_id}/finalize", response_model=ResultPayload)
async def finalize_session(session_id: str, body: FinalizeSessionRequest, service: Service):
    """Finalize with the game's summary; returns the full result payload."""
    return await service.finalize_session(
        session_id,
        body.difficulty_end,
        body.summary,
        ended_at=body.ended_at,
        duration_ms=body.duration_ms,
        app_version=body.app_version,
        game_version=body.game_version,
    )


@router.get("/sessions/{session_id}", response_model=SessionWithTrials)
async def get_session(session_id: str, service: Service):
    return await service.get_session_with_trials(session_id)


@router.post("/self-test", response_model=SelfTestResult)
async def self_test(service: Service):
    """Create, append, finalize and read back one synthetic session."""
    return await service.run_self_test()


@router.get("/sync", response_model=SyncStatus)
async def sync_status(service: Service):
    return await service.sync_status()


@router.post("/sync/flush")
async def flush_pending(service: Service):
    """Replay queued writes now; `drained` is false while anything is still pending."""
    drained = await service.flush_pending()
    return {"drained": drained}


@router.post("/sync/online", status_code=202)
async def connectivity_restored(service: Service):
    service.notify_online()
    return {"status": "scheduled"}
