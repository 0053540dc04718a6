"""Aggregation endpoints: trigger, progress, history and downloads."""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import FileResponse, PlainTextResponse, Response

from ...enums import OutputFormat
from ...service import AggregatorService
from ..dependencies import get_service
from ..models import serialize, success

router = APIRouter(prefix="/aggregate")


@router.post("", summary="Run an aggregation pass")
async def aggregate(service: AggregatorService = Depends(get_service)) -> dict:
    result = await service.aggregate()
    return success(serialize(result))


@router.get("/status", summary="Progress of the current or last pass")
async def aggregation_status(service: AggregatorService = Depends(get_service)) -> dict:
    return success(serialize(service.status()))


@router.post("/cancel", summary="Cancel the running pass")
async def cancel(service: AggregatorService = Depends(get_service)) -> dict:
    return success({"cancelled": service.cancel()})


@router.get("/stats", summary="Aggregation and host statistics")
async def stats(service: AggregatorService = Depends(get_service)) -> dict:
    return success(serialize(service.aggregation_stats()))


@router.get("/history", summary="Past aggregation results, newest first")
async def history(
    limit: Optional[int] = Query(default=None, ge=1, le=1000),
    service: AggregatorService = Depends(get_service),
) -> dict:
    return success(serialize(service.history(limit)))


@router.get("/latest", summary="Most recent aggregation result")
async def latest(service: AggregatorService = Depends(get_service)) -> dict:
    return success(serialize(service.latest()))


@router.get("/download", summary="Download the latest unified list")
async def download_latest(
    output_format: OutputFormat = Query(default=OutputFormat.HOSTS, alias="format"),
    service: AggregatorService = Depends(get_service),
) -> Response:
    if output_format == OutputFormat.ABP:
        return PlainTextResponse(
            service.render_unified(OutputFormat.ABP),
            headers={"Content-Disposition": 'attachment; filename="hosts-abp.txt"'},
        )
    path = service.result_file()
    return FileResponse(path, media_type="text/plain; charset=utf-8", filename="hosts.txt")


@router.get("/download/{result_id}", summary="Download the unified hosts file of a pass")
async def download(result_id: str, service: AggregatorService = Depends(get_service)) -> FileResponse:
    path = service.result_file(result_id)
    return FileResponse(path, media_type="text/plain; charset=utf-8", filename=path.name)


@router.post("/cleanup", summary="Delete generated files beyond the retention limit")
async def cleanup(service: AggregatorService = Depends(get_service)) -> dict:
    deleted = await service.cleanup_files()
    return success({"deleted": len(deleted), "files": [path.name for path in deleted]})
