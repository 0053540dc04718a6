"""Host endpoints: browsing, statistics and enable/disable toggles."""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from ...models import HostEntry
from ...service import DEFAULT_PAGE_SIZE, AggregatorService
from ..dependencies import get_service
from ..models import (
    BulkToggleRequest,
    BulkUpdateRequest,
    HostUpdateRequest,
    MappingUpdateRequest,
    serialize,
    success,
)

router = APIRouter(prefix="/hosts")


def _host_item(service: AggregatorService, host: HostEntry) -> dict:
    item = serialize(host)
    sources = []
    for link in service.store.links_for_host(host.id):
        source = service.store.get_source(link.source_id)
        sources.append({
            "id": link.source_id,
            "name": source.name if source else None,
            "enabled": source.enabled if source else False,
            "mappingEnabled": link.mapping_enabled,
        })
    item["sources"] = sources
    return item


@router.get("", summary="List hosts with filters and pagination")
async def list_hosts(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=500),
    search: Optional[str] = Query(default=None),
    enabled: Optional[bool] = Query(default=None),
    entry_type: Optional[str] = Query(default=None, alias="entryType"),
    source_id: Optional[str] = Query(default=None, alias="sourceId"),
    service: AggregatorService = Depends(get_service),
) -> dict:
    result = service.list_hosts(
        page=page,
        limit=limit,
        search=search,
        enabled=enabled,
        entry_type=entry_type,
        source_id=source_id,
    )
    return success({
        "hosts": [_host_item(service, host) for host in result["items"]],
        "pagination": {
            "page": result["page"],
            "limit": result["limit"],
            "total": result["total"],
            "totalPages": result["pages"],
        },
    })


@router.get("/stats", summary="Host counts by state, type and source")
async def host_stats(service: AggregatorService = Depends(get_service)) -> dict:
    return success(serialize(service.host_stats()))


@router.patch("/bulk", summary="Enable or disable many hosts")
async def bulk_update(
    body: BulkUpdateRequest,
    service: AggregatorService = Depends(get_service),
) -> dict:
    result = await service.bulk_set_enabled(body.host_ids, body.enabled)
    return success(serialize(result))


@router.post("/bulk/toggle", summary="Flip the enabled flag of many hosts")
async def bulk_toggle(
    body: BulkToggleRequest,
    service: AggregatorService = Depends(get_service),
) -> dict:
    result = await service.bulk_toggle(body.host_ids)
    return success(serialize(result))


@router.get("/{host_id}", summary="Get a host with its source mappings")
async def get_host(host_id: str, service: AggregatorService = Depends(get_service)) -> dict:
    host, links = service.get_host(host_id)
    item = _host_item(service, host)
    item["mappings"] = serialize(links)
    return success(item)


@router.patch("/{host_id}", summary="Enable or disable a host")
async def update_host(
    host_id: str,
    body: HostUpdateRequest,
    service: AggregatorService = Depends(get_service),
) -> dict:
    host = await service.set_host_enabled(host_id, body.enabled)
    return success(_host_item(service, host))


@router.patch("/{host_id}/sources/{source_id}", summary="Enable or disable one source mapping")
async def update_mapping(
    host_id: str,
    source_id: str,
    body: MappingUpdateRequest,
    service: AggregatorService = Depends(get_service),
) -> dict:
    link = await service.set_mapping_enabled(host_id, source_id, body.enabled)
    return success(serialize(link))
