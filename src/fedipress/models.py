"""Database models for the fedipress federation core."""

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all models."""
    pass


class LocalActor(Base):
    """A local actor: one per host user plus the blog actor (user_id 0).

    The key pair is generated lazily on first use and never replaced.
    """
    __tablename__ = "local_actors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Host content-system user id (0 = blog actor)
    user_id: Mapped[int] = mapped_column(Integer, unique=True, nullable=False, index=True)
    preferred_username: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)

    # RSA key pair for HTTP signatures
    public_key_pem: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    private_key_pem: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    keys_created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    followers: Mapped[list["Follower"]] = relationship(
        back_populates="local_actor", cascade="all, delete-orphan"
    )


class RemoteActor(Base):
    """Cached document of a remote ActivityPub actor."""
    __tablename__ = "remote_actors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Full actor ID URL (e.g., https://mastodon.social/users/alice)
    actor_id: Mapped[str] = mapped_column(String(512), unique=True, nullable=False, index=True)
    instance_domain: Mapped[str] = mapped_column(String(256), nullable=False, index=True)
    preferred_username: Mapped[str] = mapped_column(String(128), nullable=False, default="")

    # Endpoints
    inbox_url: Mapped[str] = mapped_column(String(512), nullable=False)
    shared_inbox_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)

    # Public key for signature verification
    public_key_id: Mapped[str] = mapped_column(String(512), nullable=False, default="", index=True)
    public_key_pem: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # Full document as fetched
    document: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    # Cache management
    fetched_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


class Follower(Base):
    """A remote actor following a local actor."""
    __tablename__ = "followers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Local actor being followed (host user id)
    local_actor_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("local_actors.user_id", ondelete="CASCADE"), nullable=False
    )
    # Remote actor doing the following
    actor_url: Mapped[str] = mapped_column(String(512), nullable=False, index=True)

    inbox_url: Mapped[str] = mapped_column(String(512), nullable=False)
    shared_inbox_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)

    # Cached actor profile JSON
    profile: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    # Consecutive failed dispatch cycles
    error_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    local_actor: Mapped[LocalActor] = relationship(back_populates="followers")

    __table_args__ = (
        Index("ix_followers_local_created", "local_actor_id", "created_at"),
        UniqueConstraint("local_actor_id", "actor_url", name="uq_follower"),
    )


class ExternalObject(Base):
    """Cached copy of a remote object received via Create/Update."""
    __tablename__ = "external_objects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    object_id: Mapped[str] = mapped_column(String(512), unique=True, nullable=False, index=True)
    object_type: Mapped[str] = mapped_column(String(32), nullable=False)
    actor_url: Mapped[str] = mapped_column(String(512), nullable=False, index=True)
    in_reply_to: Mapped[Optional[str]] = mapped_column(String(512), nullable=True, index=True)
    published: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Full object JSON
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )


class Interaction(Base):
    """Inbound Like or Announce of a local object."""
    __tablename__ = "interactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Like or Announce
    interaction_type: Mapped[str] = mapped_column(String(16), nullable=False)
    object_id: Mapped[str] = mapped_column(String(512), nullable=False, index=True)
    actor_url: Mapped[str] = mapped_column(String(512), nullable=False)
    activity_id: Mapped[str] = mapped_column(String(512), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("interaction_type", "object_id", "actor_url", name="uq_interaction"),
    )


class Option(Base):
    """Key/value settings persisted by the core (schema version, migration lock)."""
    __tablename__ = "options"

    name: Mapped[str] = mapped_column(String(128), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)


def insert_for(session: AsyncSession):
    """Return the dialect-specific ``insert`` supporting ON CONFLICT upserts."""
    if session.bind.dialect.name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    else:
        from sqlalchemy.dialects.sqlite import insert
    return insert


async def init_db(database_url: str) -> async_sessionmaker:
    """Initialize database and return session maker."""
    engine = create_async_engine(database_url, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    return async_sessionmaker(engine, expire_on_commit=False)
