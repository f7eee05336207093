"""Isolated database API endpoints."""

from typing import Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from instancehub.api.dependencies import get_manager
from instancehub.instances.manager import InstanceManager
from instancehub.isolation.backends import IsolatedDatabase

router = APIRouter(prefix="/databases", tags=["databases"])


class BackupRequest(BaseModel):
    """Backup/restore request. ``path`` is a directory on the hub host."""

    path: str = Field(min_length=1)


class BackupResponse(BaseModel):
    status: Literal["backed_up", "restored"]
    instance_id: str
    path: str


class DatabaseListResponse(BaseModel):
    databases: list[IsolatedDatabase]


@router.get("", response_model=DatabaseListResponse)
async def list_databases(
    manager: InstanceManager = Depends(get_manager),
) -> DatabaseListResponse:
    """List tracked isolated databases."""
    return DatabaseListResponse(databases=await manager.databases.list_databases())


@router.get("/{instance_id}", response_model=IsolatedDatabase)
async def get_database(
    instance_id: str,
    manager: InstanceManager = Depends(get_manager),
) -> IsolatedDatabase:
    return await manager.databases.get_isolated_database(instance_id)


@router.post("/{instance_id}/backup", response_model=BackupResponse)
async def backup_database(
    instance_id: str,
    request: BackupRequest,
    manager: InstanceManager = Depends(get_manager),
) -> BackupResponse:
    """Copy both storage files of an instance into a directory."""
    await manager.databases.backup_database(instance_id, request.path)
    return BackupResponse(status="backed_up", instance_id=instance_id, path=request.path)


@router.post("/{instance_id}/restore", response_model=BackupResponse)
async def restore_database(
    instance_id: str,
    request: BackupRequest,
    manager: InstanceManager = Depends(get_manager),
) -> BackupResponse:
    """Replace both storage files of an instance from a backup directory."""
    await manager.databases.restore_database(instance_id, request.path)
    return BackupResponse(status="restored", instance_id=instance_id, path=request.path)
