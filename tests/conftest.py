"""Pytest configuration and fixtures for fedipress tests."""

from datetime import datetime, timezone

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from fedipress.actors import ActorRegistry, RemoteActorCache, generate_rsa_keypair
from fedipress.config import FederationConfig
from fedipress.content import HostUser, InMemoryContentProvider
from fedipress.followers import FollowerStore
from fedipress.models import Base, RemoteActor

REMOTE_ACTOR = "https://remote.example/users/alice"


def build_config(**overrides) -> FederationConfig:
    """Build a test configuration; nested sections are merged into the defaults."""
    sections = {
        "server": {
            "domain": "blog.example",
            "base_url": "https://blog.example",
            "host": "127.0.0.1",
            "port": 8080,
        },
        "database": {"url": "sqlite+aiosqlite:///:memory:"},
        "delivery": {
            "timeout_seconds": 1.0,
            "max_attempts": 1,
            "backoff_seconds": 0,
            "workers": 4,
        },
    }
    for name in ("server", "database", "content", "delivery", "security"):
        if name in overrides:
            sections[name] = {**sections.get(name, {}), **overrides.pop(name)}
    overrides.setdefault("migration_retry_seconds", 0)
    return FederationConfig(**sections, **overrides)


@pytest.fixture
def config() -> FederationConfig:
    """Create test configuration."""
    return build_config()


@pytest.fixture
def make_config():
    """Factory for configurations differing from the default test config."""
    return build_config


@pytest.fixture
def content() -> InMemoryContentProvider:
    """Create host content provider with two authors."""
    provider = InMemoryContentProvider(
        home_url="https://blog.example",
        site_name="Example Blog",
        site_description="Notes from the example blog",
    )
    provider.add_user(HostUser(
        id=1,
        username="admin",
        display_name="Admin",
        bio="Writes things",
        profile_fields=[("Website", "https://admin.example")],
    ))
    provider.add_user(HostUser(id=2, username="editor", display_name="Editor"))
    return provider


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    """Create file-backed SQLite session maker for tests."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/fedipress.db", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    maker = async_sessionmaker(engine, expire_on_commit=False)
    yield maker

    await engine.dispose()


@pytest_asyncio.fixture
async def session(session_maker) -> AsyncSession:
    """Create database session for tests."""
    async with session_maker() as session:
        yield session


@pytest.fixture
def registry(config, content) -> ActorRegistry:
    return ActorRegistry(config, content)


@pytest_asyncio.fixture
async def remote_actors(config) -> RemoteActorCache:
    cache = RemoteActorCache(config)
    yield cache
    await cache.close()


@pytest.fixture
def followers(config) -> FollowerStore:
    return FollowerStore(config)


@pytest.fixture(scope="session")
def remote_keys() -> tuple[str, str]:
    """Key pair of the simulated remote actor (public_pem, private_pem)."""
    return generate_rsa_keypair()


def actor_document(actor_id: str, public_key_pem: str, inbox: str = "", shared_inbox: str = "") -> dict:
    """Build a remote actor document."""
    document = {
        "@context": ["https://www.w3.org/ns/activitystreams", "https://w3id.org/security/v1"],
        "id": actor_id,
        "type": "Person",
        "preferredUsername": actor_id.rsplit("/", 1)[-1],
        "inbox": inbox or f"{actor_id}/inbox",
        "publicKey": {
            "id": f"{actor_id}#main-key",
            "owner": actor_id,
            "publicKeyPem": public_key_pem,
        },
    }
    if shared_inbox:
        document["endpoints"] = {"sharedInbox": shared_inbox}
    return document


@pytest.fixture
def make_actor_document():
    """Factory for remote actor documents."""
    return actor_document


@pytest.fixture
def seed_remote_actor(session_maker, remote_keys):
    """Factory caching a remote actor as if it had just been fetched."""

    async def seed(
        actor_id: str = REMOTE_ACTOR,
        inbox: str = "",
        shared_inbox: str = "",
        public_key_pem: str | None = None,
    ) -> RemoteActor:
        public_pem = public_key_pem or remote_keys[0]
        document = actor_document(actor_id, public_pem, inbox, shared_inbox)
        remote = RemoteActor(
            actor_id=actor_id,
            instance_domain=actor_id.split("/")[2],
            preferred_username=document["preferredUsername"],
            inbox_url=document["inbox"],
            shared_inbox_url=shared_inbox or None,
            public_key_id=f"{actor_id}#main-key",
            public_key_pem=public_pem,
            document=document,
            fetched_at=datetime.now(timezone.utc),
        )
        async with session_maker() as session:
            session.add(remote)
            await session.commit()
        return remote

    return seed


@pytest_asyncio.fixture
async def remote_server():
    """Factory starting aiohttp applications that play remote servers."""
    servers: list[TestServer] = []

    async def start(app: web.Application) -> TestServer:
        server = TestServer(app)
        await server.start_server()
        servers.append(server)
        return server

    yield start

    for server in servers:
        await server.close()
