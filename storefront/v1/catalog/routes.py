from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Query, Request, status
from sqlalchemy import desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.config.logging import get_logger
from storefront.infra.database import SessionDep
from storefront.v1.catalog.models import Catalog
from storefront.v1.catalog.schemas import CatalogCreate, CatalogList, CatalogResponse
from storefront.v1.core.exceptions import NotFoundError, create_success_response

logger = get_logger(__name__)
router = APIRouter(prefix="/catalogs", tags=["catalogs"])


@router.post("", response_model=dict, status_code=status.HTTP_201_CREATED)
async def create_catalog(
    catalog_data: CatalogCreate,
    request: Request,
    session: AsyncSession = SessionDep,
) -> dict[str, Any]:
    """Create a new catalog."""

    catalog = Catalog(
        name=catalog_data.name,
        description=catalog_data.description,
        created_at=datetime.now(UTC),
    )
    session.add(catalog)
    await session.commit()
    await session.refresh(catalog)

    logger.info("Catalog created", catalog_id=str(catalog.id), name=catalog.name)

    return create_success_response(
        data=CatalogResponse.model_validate(catalog).model_dump(mode="json"),
        request_id=getattr(request.state, "request_id", None),
    )


@router.get("", response_model=dict)
async def list_catalogs(
    limit: int = Query(default=50, ge=1, le=200, description="Maximum results"),
    offset: int = Query(default=0, ge=0, description="Results offset"),
    session: AsyncSession = SessionDep,
) -> dict[str, Any]:
    """List catalogs, newest first."""

    total_result = await session.execute(select(func.count(Catalog.id)))
    total = total_result.scalar() or 0

    result = await session.execute(
        select(Catalog).order_by(desc(Catalog.created_at)).offset(offset).limit(limit)
    )
    catalogs = result.scalars().all()

    response_data = CatalogList(
        catalogs=[CatalogResponse.model_validate(c) for c in catalogs],
        total=total,
        limit=limit,
        offset=offset,
    )
    return create_success_response(data=response_data.model_dump(mode="json"))


@router.get("/{catalog_id}", response_model=dict)
async def get_catalog(
    catalog_id: UUID,
    session: AsyncSession = SessionDep,
) -> dict[str, Any]:
    """Get a catalog by ID."""

    result = await session.execute(select(Catalog).where(Catalog.id == catalog_id))
    catalog = result.scalar_one_or_none()
    if not catalog:
        raise NotFoundError("Catalog not found", details={"catalog_id": str(catalog_id)})

    return create_success_response(
        data=CatalogResponse.model_validate(catalog).model_dump(mode="json")
    )
