# backend/dephealth/api/connectivity.py
"""Connectivity API endpoints.

This module provides endpoints to:
- Get the current state of every tracked dependency
- Get the state of a single dependency
- Trigger a health check for a dependency now
"""

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from dephealth.connectivity.errors import UnknownDependencyId
from dephealth.connectivity.models import ConnectionSnapshot, DependencyId
from dephealth.connectivity.setup import ConnectivityServices

router = APIRouter(prefix="/internal/connectivity", tags=["connectivity"])


class ConnectionSnapshotResponse(BaseModel):
    """Response for a single dependency."""

    state: str
    retryCount: int
    connectedSince: datetime | None
    lastFailureTime: datetime | None
    lastFailureMessage: str | None
    metadata: dict[str, Any] = Field(default_factory=dict)


def get_services(request: Request) -> ConnectivityServices:
    """Resolve the connectivity services stored on the application."""
    services = getattr(request.app.state, "connectivity", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Connectivity tracking not initialized")
    return services


def _to_response(snapshot: ConnectionSnapshot) -> ConnectionSnapshotResponse:
    return ConnectionSnapshotResponse(**snapshot.to_dict())


def _resolve(name: str, services: ConnectivityServices) -> DependencyId:
    try:
        dependency = DependencyId.parse(name)
    except UnknownDependencyId:
        raise HTTPException(status_code=404, detail=f"Dependency '{name}' not found")
    if dependency not in services.registry.dependencies:
        raise HTTPException(status_code=404, detail=f"Dependency '{name}' not found")
    return dependency


@router.get("", response_model=dict[str, ConnectionSnapshotResponse])
async def get_all_connectivity(
    services: ConnectivityServices = Depends(get_services),
) -> dict[str, ConnectionSnapshotResponse]:
    """Get the connection state of every tracked dependency."""
    snapshots = services.registry.get_all_snapshots()
    return {dependency.value: _to_response(s) for dependency, s in snapshots.items()}


@router.get("/{dependency}", response_model=ConnectionSnapshotResponse)
async def get_connectivity(
    dependency: str,
    services: ConnectivityServices = Depends(get_services),
) -> ConnectionSnapshotResponse:
    """Get the connection state of one dependency."""
    snapshot = services.registry.get_snapshot(_resolve(dependency, services))
    if snapshot is None:
        raise HTTPException(status_code=404, detail=f"Dependency '{dependency}' not found")
    return _to_response(snapshot)


@router.post("/{dependency}/check", response_model=ConnectionSnapshotResponse)
async def trigger_check(
    dependency: str,
    services: ConnectivityServices = Depends(get_services),
) -> ConnectionSnapshotResponse:
    """Run a health check for one dependency now and return the fresh state."""
    dependency_id = _resolve(dependency, services)
    try:
        snapshot = await services.scheduler.trigger(dependency_id)
    except UnknownDependencyId:
        raise HTTPException(
            status_code=404, detail=f"No probe configured for dependency '{dependency}'"
        )
    if snapshot is None:
        raise HTTPException(status_code=404, detail=f"Dependency '{dependency}' not found")
    return _to_response(snapshot)
