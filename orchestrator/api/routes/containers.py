"""Execution environment endpoints."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Response, status

from orchestrator.core.dependencies import get_environments, get_store
from orchestrator.core.errors import CapacityError, NotFoundError
from orchestrator.models.container import EnvironmentInfo, EnvironmentState
from orchestrator.services.container import ContainerManager
from orchestrator.services.store import SessionStore

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/{session_id}/container", response_model=EnvironmentInfo)
async def ensure_container(
    session_id: int,
    response: Response,
    environments: ContainerManager = Depends(get_environments),
):
    """
    Ensure the session has an execution environment.

    Returns 200 with the existing environment, or 201 when one was created.
    """
    try:
        info = await environments.ensure_environment(session_id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except CapacityError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e)
        )
    except Exception:
        logger.exception(f"Failed to create environment for session {session_id}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create execution environment",
        )

    response.status_code = status.HTTP_201_CREATED if info.created else status.HTTP_200_OK
    return info


@router.get("/{session_id}/container", response_model=EnvironmentState)
async def get_container(
    session_id: int,
    store: SessionStore = Depends(get_store),
    environments: ContainerManager = Depends(get_environments),
):
    """Inspect the session's execution environment."""
    container_id = await store.find_container(session_id)
    if not container_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No execution environment for session {session_id}",
        )
    return await environments.inspect(container_id)
