"""Port availability endpoints."""

from fastapi import APIRouter, Depends

from orchestrator.core.dependencies import get_environments
from orchestrator.models.session import PortAvailability
from orchestrator.services.container import ContainerManager

router = APIRouter()


@router.get("/available", response_model=PortAvailability)
async def available_ports(
    environments: ContainerManager = Depends(get_environments),
):
    """Application ports that are free right now."""
    return await environments.ports.available()
