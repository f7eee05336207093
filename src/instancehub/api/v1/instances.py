"""Instance API endpoints."""

from typing import Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from instancehub.api.dependencies import get_manager
from instancehub.instances.manager import InstanceManager
from instancehub.instances.models import Instance, InstanceConfig, InstanceStats

router = APIRouter(prefix="/instances", tags=["instances"])


# =============================================================================
# Schemas
# =============================================================================


class CreateInstanceRequest(BaseModel):
    """Create instance request."""

    name: str = Field(min_length=1)
    phone: str = ""
    config: InstanceConfig = Field(default_factory=InstanceConfig)


class OperationResponse(BaseModel):
    """Common operation response."""

    status: Literal["deleted"]
    instance_id: str


class InstanceListResponse(BaseModel):
    """Instance list response."""

    instances: list[Instance]


# =============================================================================
# Endpoints
# =============================================================================


@router.get("", response_model=InstanceListResponse)
async def list_instances(
    manager: InstanceManager = Depends(get_manager),
) -> InstanceListResponse:
    """List all instances, oldest first."""
    return InstanceListResponse(instances=await manager.list_instances())


@router.post("", status_code=201, response_model=Instance)
async def create_instance(
    request: CreateInstanceRequest,
    manager: InstanceManager = Depends(get_manager),
) -> Instance:
    """Create a stopped instance with its own storage."""
    return await manager.create_instance(request.name, request.phone, request.config)


# Declared before /{instance_id} so "stats" is not taken as an ID
@router.get("/stats", response_model=InstanceStats)
async def get_stats(
    manager: InstanceManager = Depends(get_manager),
) -> InstanceStats:
    """Aggregate instance counts."""
    return await manager.get_stats()


@router.get("/{instance_id}", response_model=Instance)
async def get_instance(
    instance_id: str,
    manager: InstanceManager = Depends(get_manager),
) -> Instance:
    return await manager.get_instance(instance_id)


@router.delete("/{instance_id}", status_code=200, response_model=OperationResponse)
async def delete_instance(
    instance_id: str,
    manager: InstanceManager = Depends(get_manager),
) -> OperationResponse:
    """Tear down an instance."""
    await manager.delete_instance(instance_id)
    return OperationResponse(status="deleted", instance_id=instance_id)


@router.post("/{instance_id}/start", response_model=Instance)
async def start_instance(
    instance_id: str,
    manager: InstanceManager = Depends(get_manager),
) -> Instance:
    return await manager.start_instance(instance_id)


@router.post("/{instance_id}/stop", response_model=Instance)
async def stop_instance(
    instance_id: str,
    manager: InstanceManager = Depends(get_manager),
) -> Instance:
    return await manager.stop_instance(instance_id)


@router.post("/{instance_id}/restart", response_model=Instance)
async def restart_instance(
    instance_id: str,
    manager: InstanceManager = Depends(get_manager),
) -> Instance:
    return await manager.restart_instance(instance_id)
