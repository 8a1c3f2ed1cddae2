"""Pytest configuration."""

import os

# Ensure test environment
os.environ.setdefault("AA_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("AA_DEBUG", "true")
os.environ.setdefault("AA_BASE_URL", "https://shop.example.com")

import datetime
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.config import Settings, get_settings
from app.core import attribution, bot_detection, consent, ingest, param_injection, reporters
from app.middleware import rate_limit
from app.core import conversion as conversion_module
from app.models.tables import Base, TrackingLink, utcnow

REGISTRIES = (
    bot_detection.detectors,
    attribution.policies,
    param_injection.click_id_capturers,
    param_injection.redirect_filters,
    ingest.click_listeners,
    conversion_module.conversion_listeners,
    reporters.reporters,
)


def _hash(n: int) -> str:
    return f"{n:064x}"


@pytest.fixture(autouse=True)
def isolated_extensions():
    """Every test starts from the import-time registries, no consent source
    and empty rate-limit windows."""
    saved = [registry.snapshot() for registry in REGISTRIES]
    get_settings.cache_clear()
    yield
    for registry, entries in zip(REGISTRIES, saved):
        registry.restore(entries)
    consent.set_decision_source(None)
    rate_limit.reset()
    get_settings.cache_clear()


@pytest.fixture
def link_hash():
    """Deterministic 64-hex link hash: link_hash(7) → "000…07"."""
    return _hash


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None)


@pytest_asyncio.fixture
async def engine(tmp_path: Path):
    """File-backed SQLite so concurrent sessions get their own connections."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'attribution.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_maker(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_maker):
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def make_link(session):
    async def _make(n: int, status: str = "active", target_url: str = "https://shop.example.com/landing", **fields):
        link = TrackingLink(
            hash=_hash(n),
            source=fields.pop("source", "newsletter"),
            medium=fields.pop("medium", "email"),
            campaign=fields.pop("campaign", "spring"),
            target_url=target_url,
            status=status,
            **fields,
        )
        session.add(link)
        await session.commit()
        return link

    return _make


class FixedClock:
    """Callable clock for deterministic click timestamps."""

    def __init__(self, start: int = 1_760_000_000):
        self.now = start

    def __call__(self) -> float:
        return float(self.now)

    def tick(self, seconds: int = 1) -> int:
        self.now += seconds
        return self.now


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def now() -> datetime.datetime:
    return utcnow()
