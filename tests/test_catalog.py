from uuid import uuid4

import pytest
from httpx import AsyncClient


async def test_create_catalog(async_client: AsyncClient):
    response = await async_client.post(
        "/v1/catalogs", json={"name": "  Kopi Nusantara ", "description": "Single origin"}
    )

    assert response.status_code == 201
    body = response.json()
    assert body["ok"] is True
    assert body["request_id"] == response.headers["X-Request-ID"]

    catalog = body["data"]
    assert catalog["name"] == "Kopi Nusantara"
    assert catalog["description"] == "Single origin"
    assert catalog["id"]
    assert catalog["created_at"]


@pytest.mark.parametrize(
    "payload",
    [
        {"name": "ab"},
        {"name": "   ab   "},
        {"name": "x" * 101},
        {"description": "no name"},
        {"name": "Kopi", "price": 10},
    ],
)
async def test_create_catalog_validation(async_client: AsyncClient, payload):
    response = await async_client.post("/v1/catalogs", json=payload)

    assert response.status_code == 422


async def test_list_catalogs(async_client: AsyncClient):
    for name in ("Kopi", "Teh", "Rempah"):
        await async_client.post("/v1/catalogs", json={"name": name})

    response = await async_client.get("/v1/catalogs", params={"limit": 2})

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["total"] == 3
    assert data["limit"] == 2
    assert len(data["catalogs"]) == 2


async def test_list_catalogs_default_limit(async_client: AsyncClient):
    response = await async_client.get("/v1/catalogs")

    data = response.json()["data"]
    assert data["limit"] == 50
    assert data["catalogs"] == []


async def test_get_catalog(async_client: AsyncClient):
    created = await async_client.post("/v1/catalogs", json={"name": "Rempah"})
    catalog_id = created.json()["data"]["id"]

    response = await async_client.get(f"/v1/catalogs/{catalog_id}")

    assert response.status_code == 200
    assert response.json()["data"]["name"] == "Rempah"


async def test_get_missing_catalog(async_client: AsyncClient):
    response = await async_client.get(f"/v1/catalogs/{uuid4()}")

    assert response.status_code == 404
    body = response.json()
    assert body["ok"] is False
    assert body["error"]["message"] == "Catalog not found"
    assert body["error"]["code"] == 404


async def test_get_catalog_invalid_id(async_client: AsyncClient):
    response = await async_client.get("/v1/catalogs/not-a-uuid")

    assert response.status_code == 422
