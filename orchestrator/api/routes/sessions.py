"""Session lifecycle endpoints."""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, status

from orchestrator.core.dependencies import get_run_service, get_store
from orchestrator.core.errors import (
    CapacityError,
    ConflictError,
    ExternalDependencyError,
    NotFoundError,
)
from orchestrator.models.session import (
    DevServerResponse,
    RunRequest,
    RunResponse,
    SessionDetail,
    SessionList,
)
from orchestrator.services.session import SessionRunService
from orchestrator.services.store import SessionStore

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/running", response_model=SessionList)
async def list_running_sessions(store: SessionStore = Depends(get_store)):
    """List sessions whose dev server is running."""
    sessions = await store.list_running_sessions()
    return SessionList(sessions=sessions, total=len(sessions))


@router.get("/{session_id}", response_model=SessionDetail)
async def get_session(session_id: int, store: SessionStore = Depends(get_store)):
    """Get session details."""
    session = await store.get_session(session_id)
    if not session:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Session {session_id} not found",
        )
    return session


@router.post("/{session_id}/run", response_model=RunResponse)
async def run_session(
    session_id: int,
    request: Optional[RunRequest] = Body(default=None),
    run_service: SessionRunService = Depends(get_run_service),
):
    """
    Start a session's lifecycle.

    Reserves an application port and returns immediately. Setup, prompting
    and the dev server start happen in the background; poll the session to
    follow progress.
    """
    message = request.message if request else None
    try:
        return await run_service.run(session_id, message)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except (ConflictError, ValueError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except CapacityError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e)
        )


@router.post(
    "/{session_id}/start-dev",
    response_model=DevServerResponse,
)
async def start_dev_server(
    session_id: int,
    run_service: SessionRunService = Depends(get_run_service),
):
    """Start the session's dev server on its reserved port."""
    try:
        return await run_service.start_dev(session_id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except CapacityError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e)
        )
    except ExternalDependencyError as e:
        logger.error(f"Failed to start dev server for session {session_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e)
        )


@router.post(
    "/{session_id}/stop-dev",
    response_model=DevServerResponse,
    response_model_exclude_none=True,
)
async def stop_dev_server(
    session_id: int,
    run_service: SessionRunService = Depends(get_run_service),
):
    """Stop the session's dev server and release its port."""
    try:
        return await run_service.stop_dev(session_id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post("/{session_id}/setup")
async def proxy_setup(
    session_id: int,
    run_service: SessionRunService = Depends(get_run_service),
) -> Dict[str, Any]:
    """Forward a setup request to the session's execution environment."""
    try:
        return await run_service.proxy_setup(session_id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ExternalDependencyError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))


@router.post("/{session_id}/execute")
async def proxy_execute(
    session_id: int,
    request: Optional[RunRequest] = Body(default=None),
    run_service: SessionRunService = Depends(get_run_service),
) -> Dict[str, Any]:
    """Forward an execute request to the session's execution environment."""
    message = request.message if request else None
    try:
        return await run_service.proxy_execute(session_id, message)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ExternalDependencyError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
