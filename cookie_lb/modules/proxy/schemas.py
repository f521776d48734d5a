from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from cookie_lb.core.types import JsonValue


class GenerateRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    model: str = Field(min_length=1)
    request: dict[str, JsonValue] = Field(default_factory=dict)


class ModelListItem(BaseModel):
    id: str
    object: str = "model"
    created: int
    owned_by: str


class ModelListResponse(BaseModel):
    object: str = "list"
    data: list[ModelListItem]
