import json
import os
import uuid
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

# Settings are read once; set env before any app import
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("REPLICATE_API_TOKEN", "r8_test_token")

from app.core.config import get_settings  # noqa: E402
from app.services.catalog import BOY_KEYS, GIRL_KEYS  # noqa: E402


@pytest.fixture(autouse=True)
def hero_prompts(tmp_path, monkeypatch) -> dict[str, str]:
    prompts = {k: f"prompt-{k}" for k in BOY_KEYS + GIRL_KEYS}
    path = tmp_path / "hero_prompts.json"
    path.write_text(json.dumps(prompts), encoding="utf-8")
    monkeypatch.setattr(get_settings(), "hero_prompts_path", str(path))
    return prompts


@pytest_asyncio.fixture
async def db():
    from app.db.init import init_db
    client = AsyncMongoMockClient()
    database = client[f"kidhero_test_{uuid.uuid4().hex[:8]}"]
    await init_db(database)
    yield database


@pytest_asyncio.fixture
async def user(db):
    from app.models.user import User
    u = User(email=f"parent-{uuid.uuid4().hex[:6]}@example.com", full_name="Test Parent")
    await u.insert()
    return u


@pytest_asyncio.fixture
async def other_user(db):
    from app.models.user import User
    u = User(email=f"other-{uuid.uuid4().hex[:6]}@example.com", full_name="Other Parent")
    await u.insert()
    return u


@pytest_asyncio.fixture
async def client(db) -> AsyncGenerator[AsyncClient, None]:
    from app.main import app
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()
