"""Activity builder and dispatcher.

Wraps transformed content items in activities and queues one signed
delivery per recipient inbox.
"""

import asyncio
import json
import time

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from .activitypub_types import AS_PUBLIC, PUBLIC_ALIASES, Activity, ActivityType
from .actors import BLOG_USER_ID, ActorRegistry, RemoteActorCache
from .config import ActorMode, ContentVisibility, FederationConfig
from .content import ContentItem
from .federation import DeliveryJob, DeliveryQueue
from .followers import FollowerStore
from .migration import MigrationLockTimeout, Migrator
from .transformer import PostTransformer

logger = structlog.get_logger()

# Activities the blog actor re-announces in actor_blog mode
ANNOUNCED_TYPES = (ActivityType.CREATE, ActivityType.UPDATE)


class ActivityDispatcher:
    """Builds activities for content items and queues their delivery."""

    def __init__(
        self,
        config: FederationConfig,
        registry: ActorRegistry,
        followers: FollowerStore,
        remote_actors: RemoteActorCache,
        transformer: PostTransformer,
        queue: DeliveryQueue,
        migrator: Migrator,
        session_maker: async_sessionmaker,
    ):
        self.config = config
        self.registry = registry
        self.followers = followers
        self.remote_actors = remote_actors
        self.transformer = transformer
        self.queue = queue
        self.migrator = migrator
        self.session_maker = session_maker
        self._deferred: set[asyncio.Task] = set()

    def build_activity(self, item: ContentItem, activity_type: ActivityType) -> tuple[int, Activity]:
        """Build the activity for an item.

        Returns:
            Tuple of (sending user id, activity)
        """
        obj = self.transformer.transform(item)

        if activity_type == ActivityType.ANNOUNCE:
            user_id = BLOG_USER_ID
            actor_url = self.registry.actor_url(user_id)
            activity = Activity(
                id=self._activity_id(actor_url, activity_type),
                type=activity_type,
                actor=actor_url,
                object=obj.id,
                to=[AS_PUBLIC],
                cc=[self.registry.followers_url(user_id)],
            )
            return user_id, activity

        user_id = self.transformer.acting_user_id(item)
        actor_url = self.registry.actor_url(user_id)
        activity = Activity(
            id=self._activity_id(actor_url, activity_type),
            type=activity_type,
            actor=actor_url,
            object=obj.to_dict(),
            published=obj.published,
            to=list(obj.to),
            cc=list(obj.cc),
        )
        return user_id, activity

    @staticmethod
    def _activity_id(actor_url: str, activity_type: ActivityType) -> str:
        return f"{actor_url}/activities/{activity_type.value.lower()}-{int(time.time() * 1000)}"

    async def dispatch(self, item: ContentItem, activity_type: ActivityType | str) -> int:
        """Send an activity about a content item to its recipients.

        Returns:
            Number of deliveries queued
        """
        activity_type = ActivityType(activity_type)

        try:
            await self.migrator.maybe_migrate()
        except MigrationLockTimeout:
            self._defer(item, activity_type)
            return 0

        visibility = item.visibility or self.config.content.default_visibility
        if visibility == ContentVisibility.LOCAL:
            logger.debug("Skipping local-only item", item_id=item.id)
            return 0

        if activity_type == ActivityType.ANNOUNCE:
            user_id = BLOG_USER_ID
        else:
            user_id = self.transformer.acting_user_id(item)
        if self.registry.is_actor_disabled(user_id):
            logger.debug("Actor disabled, not dispatching", user_id=user_id, item_id=item.id)
            return 0

        user_id, activity = self.build_activity(item, activity_type)
        body = json.dumps(activity.to_dict()).encode()

        async with self.session_maker() as session:
            follower_inboxes = await self.followers.get_inbox_addresses(session, user_id)
            mention_inboxes = set()
            # Quiet public addressing puts mentions in "to"
            for url in dict.fromkeys(activity.to + activity.cc):
                if url in PUBLIC_ALIASES or url.startswith(self.registry.base_url):
                    continue
                inbox = await self.remote_actors.inbox_for(
                    session, url, self.config.delivery.use_shared_inbox
                )
                if inbox:
                    mention_inboxes.add(inbox)

        inboxes = sorted(follower_inboxes | mention_inboxes)
        for inbox in inboxes:
            self.queue.enqueue(DeliveryJob(
                user_id=user_id,
                inbox_url=inbox,
                body=body,
                activity_id=activity.id,
                track_followers=inbox in follower_inboxes,
            ))

        logger.info(
            "Dispatched activity",
            type=activity_type.value,
            activity_id=activity.id,
            item_id=item.id,
            recipients=len(inboxes),
        )
        return len(inboxes)

    async def publish(self, item: ContentItem, activity_type: ActivityType | str) -> int:
        """Dispatch an item's activity and, in actor_blog mode, the blog's Announce."""
        activity_type = ActivityType(activity_type)
        queued = await self.dispatch(item, activity_type)

        if (
            self.config.actor_mode == ActorMode.ACTOR_BLOG
            and activity_type in ANNOUNCED_TYPES
            and self.transformer.acting_user_id(item) != BLOG_USER_ID
        ):
            queued += await self.dispatch(item, ActivityType.ANNOUNCE)

        return queued

    def _defer(self, item: ContentItem, activity_type: ActivityType) -> None:
        delay = self.config.migration_retry_seconds
        logger.warning(
            "Migration in progress, deferring dispatch",
            item_id=item.id,
            type=activity_type.value,
            retry_in=delay,
        )

        async def retry() -> None:
            await asyncio.sleep(delay)
            await self.dispatch(item, activity_type)

        task = asyncio.create_task(retry())
        self._deferred.add(task)
        task.add_done_callback(self._deferred.discard)

    @property
    def deferred(self) -> int:
        """Number of dispatches waiting for the migration lock."""
        return len(self._deferred)

    async def close(self) -> None:
        for task in list(self._deferred):
            task.cancel()
        await asyncio.gather(*self._deferred, return_exceptions=True)
