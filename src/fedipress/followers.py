"""Follower store.

Persists which remote actors follow which local actor, resolves delivery
inboxes and prunes followers whose inboxes keep failing.
"""

from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .config import FederationConfig
from .models import Follower, insert_for

logger = structlog.get_logger()


def profile_endpoints(profile: dict[str, Any]) -> tuple[str, str | None]:
    """Return (inbox, shared_inbox) advertised by an actor profile."""
    inbox = profile.get("inbox", "")
    endpoints = profile.get("endpoints") or {}
    shared_inbox = endpoints.get("sharedInbox") if isinstance(endpoints, dict) else None
    return inbox, shared_inbox or None


class FollowerStore:
    """Follower relationships of local actors."""

    def __init__(self, config: FederationConfig):
        self.config = config
        self.error_threshold = config.delivery.follower_error_threshold
        self.use_shared_inbox = config.delivery.use_shared_inbox

    async def add_follower(
        self,
        session: AsyncSession,
        local_actor_id: int,
        actor_url: str,
        profile: dict[str, Any],
    ) -> Follower:
        """Record that a remote actor follows a local actor.

        Re-adding an existing follower refreshes its endpoints and profile
        and clears its error counter.

        Raises:
            ValueError: If the profile has no inbox
        """
        inbox, shared_inbox = profile_endpoints(profile)
        if not inbox:
            raise ValueError(f"Actor {actor_url} has no inbox")

        now = datetime.now(timezone.utc)
        refreshed = {
            "inbox_url": inbox,
            "shared_inbox_url": shared_inbox,
            "profile": profile,
            "error_count": 0,
            "last_error": None,
            "updated_at": now,
        }

        insert = insert_for(session)
        await session.execute(
            insert(Follower)
            .values(
                local_actor_id=local_actor_id,
                actor_url=actor_url,
                created_at=now,
                **refreshed,
            )
            .on_conflict_do_update(
                index_elements=["local_actor_id", "actor_url"],
                set_=refreshed,
            )
        )
        await session.commit()

        follower = await self.get_follower(session, local_actor_id, actor_url)
        await session.refresh(follower)

        logger.info("Follower added", local_actor=local_actor_id, follower=actor_url)
        return follower

    async def get_follower(
        self,
        session: AsyncSession,
        local_actor_id: int,
        actor_url: str,
    ) -> Follower | None:
        result = await session.execute(
            select(Follower).where(
                Follower.local_actor_id == local_actor_id,
                Follower.actor_url == actor_url,
            )
        )
        return result.scalar_one_or_none()

    async def remove_follower(
        self,
        session: AsyncSession,
        local_actor_id: int,
        actor_url: str,
    ) -> bool:
        """Remove a follower. Returns False if it was not following."""
        result = await session.execute(
            delete(Follower).where(
                Follower.local_actor_id == local_actor_id,
                Follower.actor_url == actor_url,
            )
        )
        await session.commit()

        removed = result.rowcount > 0
        if removed:
            logger.info("Follower removed", local_actor=local_actor_id, follower=actor_url)
        return removed

    async def remove_actor_everywhere(self, session: AsyncSession, actor_url: str) -> int:
        """Remove a remote actor from the followers of every local actor."""
        result = await session.execute(
            delete(Follower).where(Follower.actor_url == actor_url)
        )
        await session.commit()

        if result.rowcount:
            logger.info("Remote actor unfollowed everywhere", follower=actor_url, count=result.rowcount)
        return result.rowcount

    async def list_followers(
        self,
        session: AsyncSession,
        local_actor_id: int,
        page: int = 1,
        per_page: int = 20,
        order: str = "desc",
    ) -> tuple[list[Follower], int]:
        """Page through followers, newest first by default.

        Returns:
            Tuple of (followers on this page, total follower count)
        """
        if order not in ("asc", "desc"):
            raise ValueError(f"Invalid order: {order}")
        page = max(page, 1)
        per_page = max(per_page, 1)

        if order == "asc":
            ordering = (Follower.created_at.asc(), Follower.id.asc())
        else:
            ordering = (Follower.created_at.desc(), Follower.id.desc())

        result = await session.execute(
            select(Follower)
            .where(Follower.local_actor_id == local_actor_id)
            .order_by(*ordering)
            .offset((page - 1) * per_page)
            .limit(per_page)
        )
        followers = list(result.scalars().all())

        total = await self.count_followers(session, local_actor_id)
        return followers, total

    async def count_followers(self, session: AsyncSession, local_actor_id: int) -> int:
        result = await session.execute(
            select(func.count(Follower.id)).where(Follower.local_actor_id == local_actor_id)
        )
        return result.scalar_one()

    async def get_inbox_addresses(self, session: AsyncSession, local_actor_id: int) -> set[str]:
        """Return the de-duplicated delivery inboxes of an actor's followers."""
        result = await session.execute(
            select(Follower.inbox_url, Follower.shared_inbox_url)
            .where(Follower.local_actor_id == local_actor_id)
        )

        inboxes = set()
        for inbox_url, shared_inbox_url in result.all():
            if self.use_shared_inbox and shared_inbox_url:
                inboxes.add(shared_inbox_url)
            else:
                inboxes.add(inbox_url)
        return inboxes

    def _inbox_clause(self, inbox_url: str):
        if self.use_shared_inbox:
            return or_(
                Follower.shared_inbox_url == inbox_url,
                (Follower.inbox_url == inbox_url) & Follower.shared_inbox_url.is_(None),
            )
        return Follower.inbox_url == inbox_url

    async def record_delivery_failure(
        self,
        session: AsyncSession,
        local_actor_id: int,
        inbox_url: str,
        error: str = "",
    ) -> int:
        """Count a failed dispatch cycle against every follower behind an inbox.

        Followers reaching the error threshold are removed.

        Returns:
            Number of followers pruned
        """
        where = (Follower.local_actor_id == local_actor_id, self._inbox_clause(inbox_url))

        await session.execute(
            update(Follower)
            .where(*where)
            .values(error_count=Follower.error_count + 1, last_error=error[:1000] or None)
        )
        result = await session.execute(
            delete(Follower).where(*where, Follower.error_count >= self.error_threshold)
        )
        await session.commit()

        pruned = result.rowcount
        if pruned:
            logger.warning(
                "Pruned unreachable followers",
                local_actor=local_actor_id,
                inbox=inbox_url,
                count=pruned,
            )
        return pruned

    async def record_delivery_success(
        self,
        session: AsyncSession,
        local_actor_id: int,
        inbox_url: str,
    ) -> None:
        """Reset the error counter of every follower behind an inbox."""
        await session.execute(
            update(Follower)
            .where(
                Follower.local_actor_id == local_actor_id,
                self._inbox_clause(inbox_url),
                Follower.error_count > 0,
            )
            .values(error_count=0, last_error=None)
        )
        await session.commit()
