"""Actor registry and remote actor cache.

Implements:
- Local actor directory (one actor per author plus the blog actor)
- Lazy, persisted RSA key pairs and signing
- Actor resolution by id, username, acct: handle or URI
- WebFinger discovery (RFC 7033)
- Remote actor document cache with TTL
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import urlparse

import aiohttp
import structlog
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .activitypub_types import (
    AP_ACCEPT_HEADER,
    AP_CONTENT_TYPE,
    Actor,
    ObjectType,
    PublicKey,
    extract_instance_domain,
    format_timestamp,
    parse_actor,
)
from .config import ActorMode, FederationConfig
from .content import ContentProvider
from .models import LocalActor, RemoteActor, insert_for

logger = structlog.get_logger()

# Host user id of the synthetic blog actor
BLOG_USER_ID = 0


class ActorNotFoundError(Exception):
    """Actor identifier cannot be resolved."""
    pass


def generate_rsa_keypair() -> tuple[str, str]:
    """Generate RSA key pair for HTTP signatures.

    Returns:
        Tuple of (public_key_pem, private_key_pem)
    """
    private_key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=2048,
    )

    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()

    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()

    return public_pem, private_pem


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ActorRegistry:
    """Directory of local actors and their key material."""

    def __init__(self, config: FederationConfig, content: ContentProvider):
        """Initialize actor registry.

        Args:
            config: Federation configuration
            content: Host content provider (source of users)
        """
        self.config = config
        self.content = content
        self.base_url = config.server.base_url.rstrip("/")
        self.domain = config.server.domain

    # === URLs ===

    def actor_url(self, user_id: int) -> str:
        return f"{self.base_url}/actors/{user_id}"

    def key_id(self, user_id: int) -> str:
        return f"{self.actor_url(user_id)}#main-key"

    def followers_url(self, user_id: int) -> str:
        return f"{self.actor_url(user_id)}/followers"

    @property
    def shared_inbox_url(self) -> str:
        return f"{self.base_url}/inbox"

    # === Policy ===

    def is_actor_disabled(self, user_id: int) -> bool:
        """Whether a local actor is excluded from federation.

        The blog actor is disabled in actor-only mode; author actors are
        disabled in blog-only mode, when listed in ``disabled_users`` or when
        the host user cannot publish.
        """
        mode = self.config.actor_mode

        if user_id == BLOG_USER_ID:
            return mode == ActorMode.ACTOR

        if mode == ActorMode.BLOG or user_id in self.config.disabled_users:
            return True

        user = self.content.get_user(user_id)
        return user is None or not user.can_publish

    def acting_user_id(self, author_id: int) -> int:
        """Return the local actor that publishes an author's content."""
        if self.config.single_user_mode:
            return BLOG_USER_ID
        if self.content.get_user(author_id) is None:
            return BLOG_USER_ID
        return author_id

    def _username_for(self, user_id: int) -> str:
        if user_id == BLOG_USER_ID:
            return self.config.blog_username
        user = self.content.get_user(user_id)
        if user is None:
            raise ActorNotFoundError(f"Unknown user: {user_id}")
        return user.username

    # === Local Actor Management ===

    async def get_local_actor(self, session: AsyncSession, user_id: int) -> LocalActor:
        """Get the local actor record for a host user, creating it on first use.

        Raises:
            ActorNotFoundError: If the user does not exist or is disabled
        """
        if self.is_actor_disabled(user_id):
            raise ActorNotFoundError(f"Actor disabled or unknown: {user_id}")

        result = await session.execute(
            select(LocalActor).where(LocalActor.user_id == user_id)
        )
        actor = result.scalar_one_or_none()
        if actor:
            return actor

        insert = insert_for(session)
        await session.execute(
            insert(LocalActor)
            .values(
                user_id=user_id,
                preferred_username=self._username_for(user_id),
                created_at=datetime.now(timezone.utc),
            )
            .on_conflict_do_nothing(index_elements=["user_id"])
        )
        await session.commit()

        result = await session.execute(
            select(LocalActor).where(LocalActor.user_id == user_id)
        )
        actor = result.scalar_one()

        logger.info("Registered local actor", user_id=user_id, username=actor.preferred_username)
        return actor

    async def get_local_actors(self, session: AsyncSession) -> list[LocalActor]:
        """Return all enabled local actors, blog actor first."""
        user_ids = [BLOG_USER_ID] + [u.id for u in self.content.list_users()]
        actors = []
        for user_id in user_ids:
            if self.is_actor_disabled(user_id):
                continue
            actors.append(await self.get_local_actor(session, user_id))
        return actors

    async def resolve(self, session: AsyncSession, identifier: str | int) -> LocalActor:
        """Resolve an identifier to a local actor.

        Accepted forms: numeric host user id, username, ``user@host``,
        ``acct:user@host`` and local actor URIs.

        Raises:
            ActorNotFoundError: If the identifier does not name an enabled local actor
        """
        if isinstance(identifier, int):
            return await self.get_local_actor(session, identifier)

        ident = identifier.strip()

        if ident.startswith(("https://", "http://")):
            prefix = f"{self.base_url}/actors/"
            if not ident.startswith(prefix):
                raise ActorNotFoundError(f"Not a local actor: {ident}")
            ident = ident[len(prefix):].split("#", 1)[0].strip("/")
        else:
            if ident.startswith("acct:"):
                ident = ident[5:]
            ident = ident.lstrip("@")
            if "@" in ident:
                ident, host = ident.rsplit("@", 1)
                if host.lower() != self.domain.lower():
                    raise ActorNotFoundError(f"Foreign domain: {host}")

        if ident.isdigit():
            return await self.get_local_actor(session, int(ident))

        if ident == self.config.blog_username:
            return await self.get_local_actor(session, BLOG_USER_ID)

        user = self.content.get_user_by_username(ident)
        if user is None:
            raise ActorNotFoundError(f"Unknown actor: {identifier}")
        return await self.get_local_actor(session, user.id)

    async def delete_local_actor(self, session: AsyncSession, user_id: int) -> bool:
        """Delete a local actor together with its followers."""
        result = await session.execute(
            select(LocalActor).where(LocalActor.user_id == user_id)
        )
        actor = result.scalar_one_or_none()
        if not actor:
            return False

        await session.delete(actor)
        await session.commit()

        logger.info("Deleted local actor", user_id=user_id)
        return True

    # === Keys and Signing ===

    async def ensure_keys(self, session: AsyncSession, actor: LocalActor) -> LocalActor:
        """Make sure the actor has a key pair, generating one on first use.

        The key is stored with a compare-and-set update so that concurrent
        generators keep whichever key was persisted first.
        """
        if actor.private_key_pem and actor.public_key_pem:
            return actor

        public_pem, private_pem = await asyncio.to_thread(generate_rsa_keypair)

        await session.execute(
            update(LocalActor)
            .where(LocalActor.id == actor.id, LocalActor.private_key_pem.is_(None))
            .values(
                public_key_pem=public_pem,
                private_key_pem=private_pem,
                keys_created_at=datetime.now(timezone.utc),
            )
        )
        await session.commit()
        await session.refresh(actor)

        logger.info("Generated key pair", user_id=actor.user_id)
        return actor

    async def sign_as(self, session: AsyncSession, actor: LocalActor, data: bytes) -> bytes:
        """Sign data with the actor's private key (RSA-SHA256, PKCS#1 v1.5)."""
        actor = await self.ensure_keys(session, actor)
        private_key = serialization.load_pem_private_key(
            actor.private_key_pem.encode(),
            password=None,
        )
        return private_key.sign(data, padding.PKCS1v15(), hashes.SHA256())

    # === ActivityStreams Representation ===

    def build_actor_object(self, actor: LocalActor) -> Actor:
        """Build ActivityPub Actor object from a local actor record.

        Args:
            actor: LocalActor record (keys should already be ensured)

        Returns:
            Actor object
        """
        actor_url = self.actor_url(actor.user_id)

        public_key = None
        if actor.public_key_pem:
            public_key = PublicKey(
                id=self.key_id(actor.user_id),
                owner=actor_url,
                public_key_pem=actor.public_key_pem,
            )

        if actor.user_id == BLOG_USER_ID:
            actor_type = ObjectType.GROUP if self.config.actor_mode == ActorMode.ACTOR_BLOG else ObjectType.PERSON
            name = self.config.blog_name or self.content.site_name
            summary = self.content.site_description
            icon_url = self.content.site_icon_url
            fields: list[tuple[str, str]] = [("Blog", self.content.home_url)]
            published = format_timestamp(actor.created_at)
        else:
            user = self.content.get_user(actor.user_id)
            if user is None:
                raise ActorNotFoundError(f"Unknown user: {actor.user_id}")
            actor_type = ObjectType.PERSON
            name = user.display_name or user.username
            summary = user.bio
            icon_url = user.avatar_url
            fields = list(user.profile_fields)
            published = format_timestamp(user.registered or actor.created_at)

        return Actor(
            id=actor_url,
            type=actor_type,
            preferred_username=actor.preferred_username,
            name=name,
            summary=summary,
            url=actor_url,
            inbox=f"{actor_url}/inbox",
            outbox=f"{actor_url}/outbox",
            followers=f"{actor_url}/followers",
            following=f"{actor_url}/following",
            shared_inbox=self.shared_inbox_url,
            public_key=public_key,
            icon={"type": "Image", "url": icon_url} if icon_url else None,
            manually_approves_followers=False,
            discoverable=True,
            published=published,
            fields=fields,
        )

    # === WebFinger Support ===

    async def webfinger_lookup(
        self,
        session: AsyncSession,
        resource: str,
    ) -> dict[str, Any] | None:
        """Perform WebFinger lookup for a resource.

        Args:
            session: Database session
            resource: Resource URI (e.g., acct:admin@blog.example)

        Returns:
            WebFinger JRD document or None if not found
        """
        if not resource.startswith(("acct:", "https://", "http://")):
            return None

        try:
            actor = await self.resolve(session, resource)
        except ActorNotFoundError:
            return None

        actor_url = self.actor_url(actor.user_id)

        return {
            "subject": f"acct:{actor.preferred_username}@{self.domain}",
            "aliases": [
                actor_url,
            ],
            "links": [
                {
                    "rel": "self",
                    "type": AP_CONTENT_TYPE,
                    "href": actor_url,
                },
                {
                    "rel": "http://webfinger.net/rel/profile-page",
                    "type": "text/html",
                    "href": actor_url,
                },
            ],
        }


class RemoteActorCache:
    """Fetches remote actor documents and caches them with a TTL."""

    def __init__(
        self,
        config: FederationConfig,
        http_session: aiohttp.ClientSession | None = None,
    ):
        self.config = config
        self.ttl = timedelta(seconds=config.security.remote_actor_ttl_seconds)
        self._http_session = http_session
        self._owns_session = http_session is None

    async def _get_http_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._http_session is None or self._http_session.closed:
            self._http_session = aiohttp.ClientSession()
            self._owns_session = True
        return self._http_session

    async def close(self) -> None:
        """Close HTTP session if this cache created it."""
        if self._owns_session and self._http_session and not self._http_session.closed:
            await self._http_session.close()

    async def get(self, session: AsyncSession, actor_id: str) -> RemoteActor | None:
        """Get cached remote actor without fetching."""
        result = await session.execute(
            select(RemoteActor).where(RemoteActor.actor_id == actor_id)
        )
        return result.scalar_one_or_none()

    def is_fresh(self, remote: RemoteActor) -> bool:
        age = datetime.now(timezone.utc) - _as_utc(remote.fetched_at)
        return age < self.ttl

    async def _fetch_document(self, url: str) -> dict[str, Any]:
        http_session = await self._get_http_session()
        timeout = aiohttp.ClientTimeout(total=self.config.security.fetch_timeout_seconds)
        try:
            async with http_session.get(
                url,
                headers={
                    "Accept": AP_ACCEPT_HEADER,
                    "User-Agent": self.config.server.user_agent,
                },
                timeout=timeout,
            ) as response:
                if response.status != 200:
                    raise ActorNotFoundError(f"Failed to fetch {url}: HTTP {response.status}")
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise ActorNotFoundError(f"Failed to fetch {url}: {e}") from e

        if not isinstance(data, dict):
            raise ActorNotFoundError(f"Invalid document at {url}")
        return data

    async def fetch(
        self,
        session: AsyncSession,
        actor_id: str,
        force: bool = False,
    ) -> RemoteActor:
        """Fetch and cache a remote ActivityPub actor.

        Args:
            session: Database session
            actor_id: Full actor ID URL
            force: Re-fetch even when the cached copy is fresh

        Returns:
            RemoteActor record

        Raises:
            ActorNotFoundError: If actor cannot be fetched
        """
        existing = await self.get(session, actor_id)
        if existing and not force and self.is_fresh(existing):
            return existing

        data = await self._fetch_document(actor_id)

        actor = parse_actor(data)
        if not actor or not actor.inbox:
            raise ActorNotFoundError(f"Invalid actor document: {actor_id}")

        public_key_id = actor.public_key.id if actor.public_key else ""
        public_key_pem = actor.public_key.public_key_pem if actor.public_key else ""

        values = {
            "instance_domain": extract_instance_domain(actor_id),
            "preferred_username": actor.preferred_username,
            "inbox_url": actor.inbox,
            "shared_inbox_url": actor.shared_inbox or None,
            "public_key_id": public_key_id,
            "public_key_pem": public_key_pem,
            "document": data,
            "fetched_at": datetime.now(timezone.utc),
        }

        insert = insert_for(session)
        await session.execute(
            insert(RemoteActor)
            .values(actor_id=actor_id, **values)
            .on_conflict_do_update(index_elements=["actor_id"], set_=values)
        )
        await session.commit()

        remote = await self.get(session, actor_id)
        if existing is not None:
            await session.refresh(remote)

        logger.info("Cached remote actor", actor_id=actor_id, inbox=actor.inbox)
        return remote

    async def get_public_key(
        self,
        session: AsyncSession,
        key_id: str,
        force: bool = False,
    ) -> RemoteActor:
        """Resolve a signature keyId to the actor owning the key.

        The keyId is usually the actor URL with a ``#main-key`` fragment.

        Raises:
            ActorNotFoundError: If no actor publishes this key
        """
        actor_id = key_id.split("#", 1)[0]
        if not urlparse(actor_id).netloc:
            raise ActorNotFoundError(f"Invalid keyId: {key_id}")

        remote = await self.fetch(session, actor_id, force=force)
        if not remote.public_key_pem:
            raise ActorNotFoundError(f"Actor publishes no key: {actor_id}")
        if remote.public_key_id and remote.public_key_id != key_id and "#" in key_id:
            raise ActorNotFoundError(f"Key {key_id} not published by {actor_id}")
        return remote

    async def inbox_for(self, session: AsyncSession, actor_id: str, use_shared_inbox: bool = True) -> str | None:
        """Return the delivery inbox of a remote actor, or None if unreachable."""
        try:
            remote = await self.fetch(session, actor_id)
        except ActorNotFoundError as e:
            logger.warning("Cannot resolve inbox", actor_id=actor_id, error=str(e))
            return None
        if use_shared_inbox and remote.shared_inbox_url:
            return remote.shared_inbox_url
        return remote.inbox_url
