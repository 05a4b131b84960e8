"""Versioned data migrations.

The schema version and an advisory lock are stored in the ``options``
table. Steps run in version order and are safe to re-run.
"""

import asyncio
import time
from typing import Awaitable, Callable

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .actors import BLOG_USER_ID, ActorRegistry
from .followers import profile_endpoints
from .models import Follower, Option, insert_for

logger = structlog.get_logger()

VERSION_OPTION = "fedipress_db_version"
LOCK_OPTION = "fedipress_migration_lock"
INITIAL_VERSION = "0.0.0"


class MigrationLockTimeout(Exception):
    """Another process holds the migration lock."""
    pass


def parse_version(version: str) -> tuple[int, ...]:
    """Parse "1.2.0" into (1, 2, 0); non-numeric parts count as 0."""
    parts = []
    for part in version.split("."):
        digits = "".join(ch for ch in part if ch.isdigit())
        parts.append(int(digits) if digits else 0)
    return tuple(parts)


class Migrator:
    """Brings persisted data up to the current schema version."""

    def __init__(
        self,
        registry: ActorRegistry,
        session_maker: async_sessionmaker,
        lock_timeout: int = 1800,
    ):
        self.registry = registry
        self.session_maker = session_maker
        self.lock_timeout = lock_timeout
        self.steps: list[tuple[str, Callable[[AsyncSession], Awaitable[None]]]] = [
            ("1.0.0", self._ensure_blog_actor),
            ("1.1.0", self._backfill_shared_inboxes),
            ("1.2.0", self._normalize_follower_urls),
        ]

    @property
    def target_version(self) -> str:
        return self.steps[-1][0]

    # === Options ===

    async def _get_option(self, session: AsyncSession, name: str) -> str | None:
        result = await session.execute(select(Option.value).where(Option.name == name))
        return result.scalar_one_or_none()

    async def get_version(self, session: AsyncSession) -> str:
        return await self._get_option(session, VERSION_OPTION) or INITIAL_VERSION

    async def set_version(self, session: AsyncSession, version: str) -> None:
        insert = insert_for(session)
        await session.execute(
            insert(Option)
            .values(name=VERSION_OPTION, value=version)
            .on_conflict_do_update(index_elements=["name"], set_={"value": version})
        )
        await session.commit()

    async def is_latest_version(self, session: AsyncSession) -> bool:
        return parse_version(await self.get_version(session)) >= parse_version(self.target_version)

    # === Lock ===

    async def lock(self, session: AsyncSession) -> bool:
        """Try to take the migration lock. Returns True if acquired."""
        await self.is_locked(session)

        insert = insert_for(session)
        result = await session.execute(
            insert(Option)
            .values(name=LOCK_OPTION, value=str(int(time.time())))
            .on_conflict_do_nothing(index_elements=["name"])
        )
        await session.commit()
        return result.rowcount == 1

    async def unlock(self, session: AsyncSession) -> None:
        await session.execute(delete(Option).where(Option.name == LOCK_OPTION))
        await session.commit()

    async def is_locked(self, session: AsyncSession) -> bool:
        """Whether the lock is held. A lock older than the timeout is released."""
        value = await self._get_option(session, LOCK_OPTION)
        if value is None:
            return False

        try:
            locked_at = int(value)
        except ValueError:
            locked_at = 0

        if locked_at < time.time() - self.lock_timeout:
            logger.warning("Releasing stale migration lock", locked_at=locked_at)
            await self.unlock(session)
            return False
        return True

    # === Running ===

    async def migrate(self) -> list[str]:
        """Run every pending step.

        Returns:
            Versions of the steps applied

        Raises:
            MigrationLockTimeout: If another process holds the lock
        """
        async with self.session_maker() as session:
            if not await self.lock(session):
                raise MigrationLockTimeout("Migration already in progress")

            applied = []
            try:
                current = parse_version(await self.get_version(session))
                for version, step in self.steps:
                    if parse_version(version) <= current:
                        continue
                    logger.info("Running migration", version=version)
                    await step(session)
                    await self.set_version(session, version)
                    applied.append(version)
            finally:
                await session.rollback()
                await self.unlock(session)

        if applied:
            logger.info("Migrations complete", applied=applied)
        return applied

    async def maybe_migrate(self, wait: float = 0) -> list[str]:
        """Migrate if the stored version is behind.

        Args:
            wait: Seconds to wait for a held lock before giving up

        Raises:
            MigrationLockTimeout: If the lock is still held after waiting
        """
        deadline = time.monotonic() + wait
        while True:
            async with self.session_maker() as session:
                if await self.is_latest_version(session):
                    return []
                locked = await self.is_locked(session)

            if not locked:
                try:
                    return await self.migrate()
                except MigrationLockTimeout:
                    if time.monotonic() >= deadline:
                        raise

            if time.monotonic() >= deadline:
                raise MigrationLockTimeout("Migration lock is held")
            await asyncio.sleep(min(1.0, max(deadline - time.monotonic(), 0)))

    # === Steps ===

    async def _ensure_blog_actor(self, session: AsyncSession) -> None:
        if not self.registry.is_actor_disabled(BLOG_USER_ID):
            await self.registry.get_local_actor(session, BLOG_USER_ID)

    async def _backfill_shared_inboxes(self, session: AsyncSession) -> None:
        result = await session.execute(
            select(Follower).where(Follower.shared_inbox_url.is_(None))
        )
        for follower in result.scalars():
            _, shared_inbox = profile_endpoints(follower.profile or {})
            if shared_inbox:
                follower.shared_inbox_url = shared_inbox
        await session.commit()

    async def _normalize_follower_urls(self, session: AsyncSession) -> None:
        result = await session.execute(
            select(Follower).where(Follower.actor_url.contains("#")).order_by(Follower.id)
        )
        for follower in result.scalars().all():
            normalized = follower.actor_url.split("#", 1)[0]
            existing = await session.execute(
                select(Follower.id).where(
                    Follower.local_actor_id == follower.local_actor_id,
                    Follower.actor_url == normalized,
                )
            )
            if existing.scalar_one_or_none() is not None:
                await session.delete(follower)
            else:
                follower.actor_url = normalized
            await session.flush()
        await session.commit()
