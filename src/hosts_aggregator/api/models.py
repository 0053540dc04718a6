"""
Request models and response envelopes for the HTTP API.

Responses wrap their payload as ``{"status": "success", "data": ...}``;
errors as ``{"status": "error", "message": ...}``. Payload keys are camelCase.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..host_store import to_plain


class CreateSourceRequest(BaseModel):
    """Request body for registering a source."""

    name: str = Field(..., min_length=1, max_length=255)
    url: str = Field(..., min_length=1)
    enabled: bool = True
    metadata: Optional[dict] = None


class UpdateSourceRequest(BaseModel):
    """Request body for updating a source; omitted fields are kept."""

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    url: Optional[str] = None
    enabled: Optional[bool] = None
    metadata: Optional[dict] = None


class HostUpdateRequest(BaseModel):
    enabled: bool


class MappingUpdateRequest(BaseModel):
    enabled: bool


class BulkUpdateRequest(BaseModel):
    """Enable or disable many hosts at once."""

    model_config = ConfigDict(populate_by_name=True)

    host_ids: list[str] = Field(..., alias="hostIds", min_length=1)
    enabled: bool


class BulkToggleRequest(BaseModel):
    """Flip the enabled flag of many hosts."""

    model_config = ConfigDict(populate_by_name=True)

    host_ids: list[str] = Field(..., alias="hostIds", min_length=1)


def camel_case(name: str) -> str:
    head, *tail = name.split("_")
    return head + "".join(part.capitalize() for part in tail)


def camelize(value: Any) -> Any:
    """Recursively rename dict keys from snake_case to camelCase."""
    if isinstance(value, dict):
        return {camel_case(k) if isinstance(k, str) else k: camelize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [camelize(v) for v in value]
    return value


def serialize(obj: Any) -> Any:
    """Model dataclasses (or lists of them) to camelCase JSON data."""
    if isinstance(obj, (list, tuple)):
        return [serialize(item) for item in obj]
    if hasattr(obj, "__dataclass_fields__"):
        return camelize(to_plain(obj))
    return camelize(obj)


def success(data: Any = None) -> dict:
    return {"status": "success", "data": data}


def error(message: str) -> dict:
    return {"status": "error", "message": message}
