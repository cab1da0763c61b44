"""Shared fixtures for API tests: an app bound to the in-memory runtime."""

from __future__ import annotations

import httpx
import pytest
from fastapi import FastAPI

from calsync.api.app import create_app


@pytest.fixture
def app(runtime) -> FastAPI:
    return create_app(runtime, run_scheduler=False)


@pytest.fixture
async def client(app: FastAPI):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def auth(user) -> dict[str, str]:
    return {"X-User-Id": user.id}
