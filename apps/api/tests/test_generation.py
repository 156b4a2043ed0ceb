from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from sqlalchemy.future import select

from conftest import auth_header
from models.generated_image import GeneratedImage
from services.errors import GenerationFailed
from services.generation import transform_image


MAKER = "generator@posters.test"


@pytest.mark.asyncio
async def test_generation_consumes_a_credit_only_after_success(client, session_maker):
    with patch(
        "services.generation.transform_image",
        new=AsyncMock(return_value="https://cdn.posters.test/generated/1.png"),
    ):
        resp = await client.post(
            "/api/generate",
            json={"image_url": "https://cdn.posters.test/upload.jpg", "style": "ukiyo-e"},
            headers=auth_header(MAKER),
        )

    assert resp.status_code == 200
    payload = resp.json()
    assert payload["poster_url"] == "https://cdn.posters.test/generated/1.png"
    assert payload["credits"]["source"] == "free"
    assert payload["credits"]["free_credits_remaining"] == 1

    async with session_maker() as db:
        image = (await db.execute(select(GeneratedImage))).scalar_one()
    assert image.owner_email == MAKER
    assert image.id == payload["image_id"]


@pytest.mark.asyncio
async def test_failed_generation_keeps_the_credit(client):
    with patch(
        "services.generation.transform_image",
        new=AsyncMock(side_effect=GenerationFailed("Poster generation failed. No credit was used.")),
    ):
        resp = await client.post(
            "/api/generate",
            json={"image_url": "https://cdn.posters.test/upload.jpg", "style": "ukiyo-e"},
            headers=auth_header(MAKER),
        )

    assert resp.status_code == 502
    assert resp.json()["code"] == "generation_failed"
    balance = await client.get("/api/generation-credits", headers=auth_header(MAKER))
    assert balance.json()["free_credits_remaining"] == 2


@pytest.mark.asyncio
async def test_generation_refused_without_credits(client):
    headers = auth_header(MAKER)
    await client.post("/api/use-generation-credit", json={}, headers=headers)
    await client.post("/api/use-generation-credit", json={}, headers=headers)
    transform = AsyncMock()

    with patch("services.generation.transform_image", new=transform):
        resp = await client.post(
            "/api/generate",
            json={"image_url": "https://cdn.posters.test/upload.jpg", "style": "ukiyo-e"},
            headers=headers,
        )

    assert resp.status_code == 402
    transform.assert_not_called()


def _client_returning(response=None, error=None):
    http_client = MagicMock()
    http_client.__aenter__ = AsyncMock(return_value=http_client)
    http_client.__aexit__ = AsyncMock(return_value=False)
    http_client.post = AsyncMock(return_value=response, side_effect=error)
    return http_client


@pytest.mark.asyncio
async def test_transform_image_reads_poster_url():
    response = httpx.Response(200, json={"poster_url": "https://cdn.posters.test/out.png"})
    http_client = _client_returning(response)

    with patch("services.generation.httpx.AsyncClient", return_value=http_client):
        poster_url = await transform_image("https://cdn.posters.test/in.jpg", "noir")

    assert poster_url == "https://cdn.posters.test/out.png"
    assert http_client.post.call_args.kwargs["json"] == {"image_url": "https://cdn.posters.test/in.jpg", "style": "noir"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response,error",
    [
        (httpx.Response(500, text="boom"), None),
        (httpx.Response(200, json={}), None),
        (None, httpx.ConnectTimeout("timed out")),
    ],
)
async def test_transform_image_failures_raise_generation_failed(response, error):
    with patch("services.generation.httpx.AsyncClient", return_value=_client_returning(response, error)):
        with pytest.raises(GenerationFailed):
            await transform_image("https://cdn.posters.test/in.jpg", "noir")
