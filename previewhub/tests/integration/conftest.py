from __future__ import annotations

from typing import AsyncIterator

import httpx
import pytest_asyncio

from previewhub.apps.api.main import create_app
from previewhub.core.config import get_settings
from previewhub.providers.compute.fake import FakeComputeProvider
from previewhub.services.context import AppContext
from previewhub.services.realtime.transport import LocalTransport


@pytest_asyncio.fixture
async def api_context() -> AsyncIterator[AppContext]:
    context = AppContext.build(get_settings(), provider=FakeComputeProvider(), transport=LocalTransport())
    await context.create_schema()
    try:
        yield context
    finally:
        await context.aclose()


@pytest_asyncio.fixture
async def client(api_context: AppContext) -> AsyncIterator[httpx.AsyncClient]:
    app = create_app(api_context)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as http:
        yield http
