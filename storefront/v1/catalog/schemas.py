from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CatalogCreate(BaseModel):
    """Schema for creating a catalog."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=3, max_length=100, description="Catalog name")
    description: str | None = Field(
        default=None, max_length=2000, description="Optional description"
    )

    @field_validator("name")
    @classmethod
    def strip_name(cls, v):
        v = v.strip()
        if len(v) < 3:
            raise ValueError("Name must be at least 3 characters")
        return v


class CatalogResponse(BaseModel):
    """Schema for catalog responses."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str | None
    created_at: datetime


class CatalogList(BaseModel):
    """Schema for paginated catalog lists."""

    catalogs: list[CatalogResponse]
    total: int
    limit: int
    offset: int
