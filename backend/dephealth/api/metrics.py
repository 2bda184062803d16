# backend/dephealth/api/metrics.py
"""Prometheus scrape endpoint for connectivity metrics."""

from fastapi import APIRouter, Depends, HTTPException, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from dephealth.api.connectivity import get_services
from dephealth.connectivity.setup import ConnectivityServices

router = APIRouter(tags=["metrics"])


@router.get("/metrics")
async def get_metrics(services: ConnectivityServices = Depends(get_services)) -> Response:
    """Expose the metrics sink's collector registry in text format."""
    registry = getattr(services.metrics_sink, "registry", None)
    if registry is None:
        raise HTTPException(status_code=404, detail="Metrics sink does not export Prometheus metrics")
    return Response(content=generate_latest(registry), media_type=CONTENT_TYPE_LATEST)
