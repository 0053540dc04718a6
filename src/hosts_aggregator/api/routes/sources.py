"""Source endpoints: CRUD, refresh, format detection, health and fetch logs."""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from ...service import AggregatorService
from ..dependencies import get_service
from ..models import CreateSourceRequest, UpdateSourceRequest, serialize, success

router = APIRouter(prefix="/sources")


# Health routes come first so "/sources/health" is not read as a source id.

@router.get("/health", summary="Health of every source")
async def list_health(service: AggregatorService = Depends(get_service)) -> dict:
    return success(serialize(service.health_all()))


@router.get("/health/report", summary="Aggregate health report")
async def health_report(service: AggregatorService = Depends(get_service)) -> dict:
    return success(serialize(service.health_report()))


@router.post("/health/check-all", summary="Probe every source now")
async def check_all(service: AggregatorService = Depends(get_service)) -> dict:
    report = await service.check_all()
    return success(serialize(report))


@router.get("", summary="List sources")
async def list_sources(service: AggregatorService = Depends(get_service)) -> dict:
    return success(serialize(service.list_sources()))


@router.post("", status_code=status.HTTP_201_CREATED, summary="Register a source")
async def create_source(
    body: CreateSourceRequest,
    service: AggregatorService = Depends(get_service),
) -> dict:
    source = await service.create_source(
        name=body.name, url=body.url, enabled=body.enabled, metadata=body.metadata
    )
    return success(serialize(source))


@router.get("/{source_id}", summary="Get a source")
async def get_source(source_id: str, service: AggregatorService = Depends(get_service)) -> dict:
    return success(serialize(service.get_source(source_id)))


@router.put("/{source_id}", summary="Update a source")
async def update_source(
    source_id: str,
    body: UpdateSourceRequest,
    service: AggregatorService = Depends(get_service),
) -> dict:
    source = await service.update_source(
        source_id, name=body.name, url=body.url, enabled=body.enabled, metadata=body.metadata
    )
    return success(serialize(source))


@router.delete("/{source_id}", summary="Delete a source")
async def delete_source(source_id: str, service: AggregatorService = Depends(get_service)) -> dict:
    source = await service.delete_source(source_id)
    return success(serialize(source))


@router.post("/{source_id}/toggle", summary="Enable or disable a source")
async def toggle_source(source_id: str, service: AggregatorService = Depends(get_service)) -> dict:
    source = await service.toggle_source(source_id)
    return success(serialize(source))


@router.post("/{source_id}/refresh", summary="Run a pass restricted to one source")
async def refresh_source(source_id: str, service: AggregatorService = Depends(get_service)) -> dict:
    result = await service.refresh_source(source_id)
    return success(serialize(result))


@router.get("/{source_id}/detect-format", summary="Detect the list syntax of a source")
async def detect_format(source_id: str, service: AggregatorService = Depends(get_service)) -> dict:
    detection = await service.detect_source_format(source_id)
    data = serialize(detection)
    data["recommendation"] = detection.recommendation
    return success(data)


@router.get("/{source_id}/health", summary="Health of one source")
async def source_health(source_id: str, service: AggregatorService = Depends(get_service)) -> dict:
    return success(serialize(service.health_for(source_id)))


@router.post("/{source_id}/check", summary="Probe one source now")
async def check_source(source_id: str, service: AggregatorService = Depends(get_service)) -> dict:
    health = await service.check_source(source_id)
    return success(serialize(health))


@router.get("/{source_id}/logs", summary="Fetch logs of a source, newest first")
async def source_logs(
    source_id: str,
    limit: Optional[int] = Query(default=None, ge=1, le=1000),
    service: AggregatorService = Depends(get_service),
) -> dict:
    return success(serialize(service.source_logs(source_id, limit)))
