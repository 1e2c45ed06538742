import os
from collections.abc import AsyncGenerator, Generator
from io import BytesIO

import pytest
from PIL import Image
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Keep pytest output high-signal by disabling outbound Sentry capture in tests.
os.environ["SENTRY_DSN"] = ""

from assetflow.core import metrics
from assetflow.db.base import Base
from assetflow.services.blob_store import LocalBlobStore
import assetflow.models  # noqa: F401

BUCKET = "assets"


@pytest.fixture(scope="module")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_metrics() -> Generator[None, None, None]:
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    # A file database so that concurrent sessions get their own connections.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'assetflow.db'}", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield async_sessionmaker(engine, expire_on_commit=False, autoflush=False)
    finally:
        await engine.dispose()


@pytest.fixture
def blob_store(tmp_path) -> LocalBlobStore:
    return LocalBlobStore(tmp_path / "blobs", secret="test-secret", base_url="http://blobs.test/blobs")


def make_image_bytes(width: int, height: int, *, fmt: str = "JPEG", mode: str = "RGB") -> bytes:
    img = Image.new(mode, (width, height), color=(120, 60, 200) if mode == "RGB" else 128)
    buf = BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def make_image():
    return make_image_bytes
