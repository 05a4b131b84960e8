"""Inbox processing.

Incoming activities are validated synchronously so that malformed requests
are rejected with a 400, then processed in the background after the 202
response has been sent.
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .activitypub_types import (
    ACTOR_TYPES,
    Activity,
    ActivityType,
    ActivityValidationError,
    JsonDict,
    actor_id_of,
    object_id_of,
)
from .actors import ActorNotFoundError, ActorRegistry, RemoteActorCache
from .config import FederationConfig
from .content import ContentProvider
from .federation import DeliveryJob, DeliveryQueue
from .followers import FollowerStore
from .models import ExternalObject, Interaction, LocalActor, RemoteActor, insert_for
from .signatures import SignatureEngine, SignatureVerificationError

logger = structlog.get_logger()

REQUIRED_PARAMS = ("id", "type", "actor", "object")


@dataclass
class InboxEnvelope:
    """An accepted inbox request awaiting processing."""
    activity: JsonDict
    method: str = "POST"
    path: str = "/inbox"
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    # Local actor whose personal inbox received the request (None = shared inbox)
    recipient_user_id: int | None = None
    # Actor whose signature was verified on receipt (None = not verified yet)
    signed_by: str | None = None


def validate_activity(activity: Any) -> JsonDict:
    """Check the shape of an inbound activity.

    Raises:
        ActivityValidationError: Naming the offending parameter
    """
    if not isinstance(activity, dict):
        raise ActivityValidationError("Activity must be a JSON object", "body", "invalid_json")

    for param in REQUIRED_PARAMS:
        if activity.get(param) in (None, "", [], {}):
            raise ActivityValidationError(f"Missing parameter(s): {param}", param, "missing_param")

    if not isinstance(activity["type"], str):
        raise ActivityValidationError("Invalid parameter(s): type", "type")
    if not actor_id_of(activity["actor"]):
        raise ActivityValidationError("Invalid parameter(s): actor", "actor")
    if not object_id_of(activity["object"]) and not isinstance(activity["object"], dict):
        raise ActivityValidationError("Invalid parameter(s): object", "object")

    if activity["type"] in (ActivityType.CREATE.value, ActivityType.UPDATE.value):
        obj = activity["object"]
        if not isinstance(obj, dict):
            raise ActivityValidationError("Invalid parameter(s): object", "object")

        # Profile updates carry an actor document, not content
        if activity["type"] == ActivityType.UPDATE.value and obj.get("type") in ACTOR_TYPES:
            return activity

        if not obj.get("id"):
            raise ActivityValidationError("Invalid parameter(s): object.id", "object")
        if not (obj.get("content") or obj.get("inReplyTo")):
            raise ActivityValidationError("Invalid parameter(s): object.content", "object")
        if not obj.get("published"):
            raise ActivityValidationError("Invalid parameter(s): object.published", "object")

    return activity


class InboxProcessor:
    """Applies the side effects of inbound activities."""

    def __init__(
        self,
        config: FederationConfig,
        content: ContentProvider,
        registry: ActorRegistry,
        followers: FollowerStore,
        remote_actors: RemoteActorCache,
        signatures: SignatureEngine,
        queue: DeliveryQueue,
        session_maker: async_sessionmaker,
    ):
        self.config = config
        self.content = content
        self.registry = registry
        self.followers = followers
        self.remote_actors = remote_actors
        self.signatures = signatures
        self.queue = queue
        self.session_maker = session_maker
        self._tasks: set[asyncio.Task] = set()

    validate = staticmethod(validate_activity)

    # === Background Processing ===

    def submit(self, envelope: InboxEnvelope) -> asyncio.Task:
        """Schedule an envelope for processing after the response is sent."""
        task = asyncio.create_task(self._run(envelope))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, envelope: InboxEnvelope) -> str:
        try:
            async with self.session_maker() as session:
                return await self.process(session, envelope)
        except Exception:
            logger.exception(
                "Inbox processing failed",
                activity_id=envelope.activity.get("id"),
                type=envelope.activity.get("type"),
            )
            return "error"

    async def drain(self) -> None:
        """Wait for all submitted envelopes to be processed."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    # === Dispatch ===

    async def process(self, session: AsyncSession, envelope: InboxEnvelope) -> str:
        """Apply one activity.

        Returns:
            Short status describing the outcome
        """
        activity = envelope.activity
        activity_type = activity.get("type", "")

        logger.info(
            "Processing inbox activity",
            type=activity_type,
            activity_id=activity.get("id"),
            from_actor=actor_id_of(activity.get("actor")),
            to_actor=envelope.recipient_user_id,
        )

        handlers = {
            ActivityType.FOLLOW.value: self._handle_follow,
            ActivityType.UNDO.value: self._handle_undo,
            ActivityType.CREATE.value: self._handle_create_or_update,
            ActivityType.UPDATE.value: self._handle_create_or_update,
            ActivityType.DELETE.value: self._handle_delete,
            ActivityType.LIKE.value: self._handle_interaction,
            ActivityType.ANNOUNCE.value: self._handle_interaction,
        }

        if envelope.signed_by and envelope.signed_by != actor_id_of(activity.get("actor")):
            logger.warning("Signer does not match actor", signer=envelope.signed_by, activity_id=activity.get("id"))
            return "rejected"

        handler = handlers.get(activity_type)
        if handler is None:
            logger.debug("Ignoring activity", type=activity_type)
            return "ignored"

        return await handler(session, envelope)

    # === Handlers ===

    async def _handle_follow(self, session: AsyncSession, envelope: InboxEnvelope) -> str:
        activity = envelope.activity
        actor_url = actor_id_of(activity["actor"])
        target = object_id_of(activity["object"])

        try:
            local_actor = await self.registry.resolve(session, target)
        except ActorNotFoundError:
            logger.info("Follow for unknown actor", target=target)
            return "ignored"

        try:
            remote = await self.remote_actors.fetch(session, actor_url)
        except ActorNotFoundError as e:
            logger.warning("Cannot fetch follower", follower=actor_url, error=str(e))
            return "ignored"

        await self.followers.add_follower(session, local_actor.user_id, actor_url, remote.document)
        self._send_accept(local_actor, activity, remote)
        return "followed"

    def _send_accept(self, local_actor: LocalActor, follow: JsonDict, remote: RemoteActor) -> None:
        actor_url = self.registry.actor_url(local_actor.user_id)
        accept = Activity(
            id=f"{actor_url}/activities/accept-{int(time.time() * 1000)}",
            type=ActivityType.ACCEPT,
            actor=actor_url,
            object=follow,
            to=[remote.actor_id],
        )
        self.queue.enqueue(DeliveryJob(
            user_id=local_actor.user_id,
            inbox_url=remote.inbox_url,
            body=json.dumps(accept.to_dict()).encode(),
            activity_id=accept.id,
            track_followers=False,
        ))
        logger.info("Queued Accept", follower=remote.actor_id, local_actor=local_actor.user_id)

    async def _handle_undo(self, session: AsyncSession, envelope: InboxEnvelope) -> str:
        activity = envelope.activity
        actor_url = actor_id_of(activity["actor"])
        inner = activity["object"]

        if not isinstance(inner, dict):
            result = await session.execute(
                delete(Interaction).where(
                    Interaction.activity_id == inner,
                    Interaction.actor_url == actor_url,
                )
            )
            await session.commit()
            return "undone" if result.rowcount else "ignored"

        inner_actor = actor_id_of(inner.get("actor"))
        if inner_actor and inner_actor != actor_url:
            logger.warning("Undo of another actor's activity", actor=actor_url, inner_actor=inner_actor)
            return "ignored"

        inner_type = inner.get("type")
        if inner_type == ActivityType.FOLLOW.value:
            try:
                local_actor = await self.registry.resolve(session, object_id_of(inner.get("object")))
            except ActorNotFoundError:
                return "ignored"
            removed = await self.followers.remove_follower(session, local_actor.user_id, actor_url)
            return "unfollowed" if removed else "ignored"

        if inner_type in (ActivityType.LIKE.value, ActivityType.ANNOUNCE.value):
            result = await session.execute(
                delete(Interaction).where(
                    Interaction.interaction_type == inner_type,
                    Interaction.object_id == object_id_of(inner.get("object")),
                    Interaction.actor_url == actor_url,
                )
            )
            await session.commit()
            return "undone" if result.rowcount else "ignored"

        return "ignored"

    async def _handle_create_or_update(self, session: AsyncSession, envelope: InboxEnvelope) -> str:
        activity = envelope.activity
        actor_url = actor_id_of(activity["actor"])

        signer = envelope.signed_by
        if signer is None:
            try:
                remote = await self.signatures.verify_request(
                    session, envelope.headers, envelope.method, envelope.path, envelope.body
                )
            except SignatureVerificationError as e:
                logger.warning("Dropping unverified activity", activity_id=activity.get("id"), error=str(e))
                return "rejected"
            signer = remote.actor_id

        if signer != actor_url:
            logger.warning("Signer does not match actor", signer=signer, actor=actor_url)
            return "rejected"

        obj = activity["object"]

        if activity["type"] == ActivityType.UPDATE.value and obj.get("type") in ACTOR_TYPES:
            if object_id_of(obj) == actor_url:
                try:
                    await self.remote_actors.fetch(session, actor_url, force=True)
                except ActorNotFoundError as e:
                    logger.warning("Cannot refresh actor", actor=actor_url, error=str(e))
            return "updated"

        if activity["type"] == ActivityType.CREATE.value and self.config.security.disable_incoming_interactions:
            return "ignored"

        # Only the actor that first stored an object may replace it
        owner = await session.scalar(
            select(ExternalObject.actor_url).where(ExternalObject.object_id == obj["id"])
        )
        if owner is not None and owner != actor_url:
            logger.warning("Object owned by another actor", object_id=obj["id"], owner=owner, actor=actor_url)
            return "rejected"

        values = {
            "object_type": str(obj.get("type", "")),
            "in_reply_to": object_id_of(obj.get("inReplyTo")) or None,
            "published": obj.get("published"),
            "data": obj,
            "updated_at": datetime.now(timezone.utc),
        }
        insert = insert_for(session)
        result = await session.execute(
            insert(ExternalObject)
            .values(object_id=obj["id"], actor_url=actor_url, **values)
            .on_conflict_do_update(
                index_elements=["object_id"],
                set_=values,
                where=ExternalObject.actor_url == actor_url,
            )
        )
        await session.commit()

        if not result.rowcount:
            logger.warning("Object owned by another actor", object_id=obj["id"], actor=actor_url)
            return "rejected"

        logger.info("Stored remote object", object_id=obj["id"], type=values["object_type"])
        return "stored"

    async def _handle_delete(self, session: AsyncSession, envelope: InboxEnvelope) -> str:
        activity = envelope.activity
        actor_url = actor_id_of(activity["actor"])
        target = object_id_of(activity["object"])

        if target == actor_url:
            removed = await self.followers.remove_actor_everywhere(session, actor_url)
            await session.execute(delete(ExternalObject).where(ExternalObject.actor_url == actor_url))
            await session.execute(delete(Interaction).where(Interaction.actor_url == actor_url))
            await session.execute(delete(RemoteActor).where(RemoteActor.actor_id == actor_url))
            await session.commit()
            logger.info("Remote actor deleted", actor=actor_url, followers_removed=removed)
            return "actor_deleted"

        result = await session.execute(
            delete(ExternalObject).where(
                ExternalObject.object_id == target,
                ExternalObject.actor_url == actor_url,
            )
        )
        await session.commit()
        return "deleted" if result.rowcount else "ignored"

    async def _handle_interaction(self, session: AsyncSession, envelope: InboxEnvelope) -> str:
        if self.config.security.disable_incoming_interactions:
            return "ignored"

        activity = envelope.activity
        actor_url = actor_id_of(activity["actor"])
        target = object_id_of(activity["object"])

        if not target.startswith(self.content.home_url) or self.content.find_item_by_url(target) is None:
            logger.debug("Interaction with non-local object", object_id=target)
            return "ignored"

        insert = insert_for(session)
        await session.execute(
            insert(Interaction)
            .values(
                interaction_type=activity["type"],
                object_id=target,
                actor_url=actor_url,
                activity_id=activity["id"],
            )
            .on_conflict_do_nothing(index_elements=["interaction_type", "object_id", "actor_url"])
        )
        await session.commit()

        logger.info("Recorded interaction", type=activity["type"], object_id=target, actor=actor_url)
        return "recorded"

    async def get_interactions(self, session: AsyncSession, object_id: str) -> list[Interaction]:
        result = await session.execute(
            select(Interaction).where(Interaction.object_id == object_id).order_by(Interaction.id)
        )
        return list(result.scalars().all())
