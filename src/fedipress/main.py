"""Main entry point for the fedipress federation server.

Implements an aiohttp-based HTTP server with:
- WebFinger endpoint (/.well-known/webfinger)
- Actor endpoints (/actors/{id})
- Shared and per-actor inboxes
- Followers collection
"""

import asyncio
import json
import logging
import math
import signal

import structlog
from aiohttp import web
from sqlalchemy.ext.asyncio import async_sessionmaker

from .activitypub_types import (
    AP_CONTENT_TYPE,
    LD_CONTENT_TYPE,
    ActivityValidationError,
    OrderedCollection,
    OrderedCollectionPage,
)
from .actors import ActorNotFoundError, ActorRegistry, RemoteActorCache
from .config import FederationConfig, load_config
from .content import ContentProvider, InMemoryContentProvider
from .dispatcher import ActivityDispatcher
from .federation import DeliveryQueue, FederationService
from .followers import FollowerStore
from .inbox import InboxEnvelope, InboxProcessor
from .migration import Migrator
from .models import init_db
from .signatures import SignatureEngine, SignatureVerificationError
from .transformer import MentionExtractor, ObjectTypeStrategy, PostTransformer

logger = structlog.get_logger()

MAX_PER_PAGE = 100


def configure_logging(level: str = "INFO") -> None:
    """Configure stdlib logging and the structlog JSON pipeline."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def error_response(message: str, code: str, status: int, params: list[str] | None = None) -> web.Response:
    return web.json_response(
        {"error": message, "code": code, "params": params or []},
        status=status,
    )


class ActivityPubServer:
    """Federation server for a host content system."""

    def __init__(
        self,
        config: FederationConfig,
        content: ContentProvider,
        session_maker: async_sessionmaker | None = None,
        type_strategy: ObjectTypeStrategy | None = None,
        mention_extractor: MentionExtractor | None = None,
    ):
        """Initialize server.

        Args:
            config: Federation configuration
            content: Host content provider
            session_maker: Database session factory (created from config if omitted)
            type_strategy: Object type strategy for the transformer
            mention_extractor: Mention extractor for the transformer
        """
        self.config = config
        self.content = content
        self.session_maker = session_maker
        self.type_strategy = type_strategy
        self.mention_extractor = mention_extractor
        self.app = web.Application()
        self.registry = None
        self.remote_actors = None
        self.followers = None
        self.signatures = None
        self.federation = None
        self.queue = None
        self.migrator = None
        self.transformer = None
        self.dispatcher = None
        self.inbox = None

    async def setup(self) -> None:
        """Set up server components and run pending migrations."""
        if self.session_maker is None:
            self.session_maker = await init_db(self.config.database.url)

        self.registry = ActorRegistry(self.config, self.content)
        self.remote_actors = RemoteActorCache(self.config)
        self.followers = FollowerStore(self.config)
        self.signatures = SignatureEngine(self.config, self.registry, self.remote_actors)
        self.federation = FederationService(
            self.config, self.registry, self.signatures, self.session_maker
        )
        self.queue = DeliveryQueue(self.config, self.federation, self.followers, self.session_maker)
        self.migrator = Migrator(
            self.registry,
            self.session_maker,
            lock_timeout=self.config.migration_lock_timeout_seconds,
        )
        self.transformer = PostTransformer(
            self.config,
            self.content,
            self.registry,
            type_strategy=self.type_strategy,
            mention_extractor=self.mention_extractor,
        )
        self.dispatcher = ActivityDispatcher(
            self.config,
            self.registry,
            self.followers,
            self.remote_actors,
            self.transformer,
            self.queue,
            self.migrator,
            self.session_maker,
        )
        self.inbox = InboxProcessor(
            self.config,
            self.content,
            self.registry,
            self.followers,
            self.remote_actors,
            self.signatures,
            self.queue,
            self.session_maker,
        )

        await self.migrator.maybe_migrate(wait=self.config.migration_retry_seconds)
        await self.queue.start()

        self._setup_routes()

        # Store services in app for handlers
        self.app["config"] = self.config
        self.app["session_maker"] = self.session_maker
        self.app["registry"] = self.registry
        self.app["followers"] = self.followers
        self.app["signatures"] = self.signatures
        self.app["inbox"] = self.inbox

        logger.info(
            "Server setup complete",
            domain=self.config.server.domain,
            base_url=self.config.server.base_url,
            actor_mode=self.config.actor_mode.value,
        )

    async def cleanup(self) -> None:
        """Clean up server resources."""
        if self.inbox:
            await self.inbox.drain()
        if self.dispatcher:
            await self.dispatcher.close()
        if self.queue:
            await self.queue.stop()
        if self.federation:
            await self.federation.close()
        if self.remote_actors:
            await self.remote_actors.close()

    def _setup_routes(self) -> None:
        """Set up HTTP routes."""
        self.app.router.add_get("/.well-known/webfinger", handle_webfinger)

        self.app.router.add_post("/inbox", handle_inbox)
        self.app.router.add_get("/actors/{id}", handle_actor)
        self.app.router.add_post("/actors/{id}/inbox", handle_inbox)
        self.app.router.add_get("/actors/{id}/followers", handle_followers)

        # Health check
        self.app.router.add_get("/health", handle_health)

    async def run(self) -> None:
        """Run the server."""
        await self.setup()

        runner = web.AppRunner(self.app)
        await runner.setup()

        site = web.TCPSite(
            runner,
            self.config.server.host,
            self.config.server.port,
        )

        await site.start()

        logger.info(
            "Server started",
            host=self.config.server.host,
            port=self.config.server.port,
        )

        # Wait for shutdown signal
        stop_event = asyncio.Event()

        def signal_handler():
            stop_event.set()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, signal_handler)

        await stop_event.wait()

        logger.info("Shutting down...")
        await self.cleanup()
        await runner.cleanup()


# === Route Handlers ===

async def handle_webfinger(request: web.Request) -> web.Response:
    """Handle WebFinger discovery requests."""
    resource = request.query.get("resource", "")
    if not resource:
        return error_response("Missing resource parameter", "missing_param", 400, ["resource"])

    async with request.app["session_maker"]() as session:
        result = await request.app["registry"].webfinger_lookup(session, resource)

    if not result:
        return error_response("Resource not found", "not_found", 404)

    return web.json_response(
        result,
        content_type="application/jrd+json",
    )


async def handle_actor(request: web.Request) -> web.Response:
    """Handle actor profile request."""
    registry: ActorRegistry = request.app["registry"]

    async with request.app["session_maker"]() as session:
        try:
            actor = await registry.resolve(session, request.match_info["id"])
        except ActorNotFoundError:
            return error_response("Actor not found", "not_found", 404)

        actor = await registry.ensure_keys(session, actor)
        document = registry.build_actor_object(actor).to_dict()

    return web.json_response(document, content_type=AP_CONTENT_TYPE)


async def handle_followers(request: web.Request) -> web.Response:
    """Handle followers collection request."""
    registry: ActorRegistry = request.app["registry"]

    try:
        page = int(request.query.get("page", "1"))
        per_page = int(request.query.get("per_page", "20"))
    except ValueError:
        return error_response("Invalid paging parameters", "invalid_param", 400, ["page"])

    order = request.query.get("order", "desc")
    context = request.query.get("context", "simple")
    if order not in ("asc", "desc"):
        return error_response("Invalid parameter(s): order", "invalid_param", 400, ["order"])
    if context not in ("simple", "full"):
        return error_response("Invalid parameter(s): context", "invalid_param", 400, ["context"])
    if page < 1 or not 1 <= per_page <= MAX_PER_PAGE:
        return error_response("Invalid paging parameters", "invalid_param", 400, ["page"])

    async with request.app["session_maker"]() as session:
        try:
            actor = await registry.resolve(session, request.match_info["id"])
        except ActorNotFoundError:
            return error_response("Actor not found", "not_found", 404)

        if "page" in request.query:
            followers, total = await request.app["followers"].list_followers(
                session, actor.user_id, page=page, per_page=per_page, order=order
            )
        else:
            followers, total = [], await request.app["followers"].count_followers(session, actor.user_id)

    followers_url = registry.followers_url(actor.user_id)
    last_page = max(1, math.ceil(total / per_page))

    def page_url(number: int) -> str:
        return f"{followers_url}?page={number}&per_page={per_page}&order={order}"

    # Without a page the collection root links to its pages
    if "page" not in request.query:
        root = OrderedCollection(
            id=followers_url,
            total_items=total,
            first=page_url(1),
            last=page_url(last_page),
        )
        return web.json_response(root.to_dict(), content_type=AP_CONTENT_TYPE)

    if context == "full":
        items = [f.profile or f.actor_url for f in followers]
    else:
        items = [f.actor_url for f in followers]

    collection = OrderedCollectionPage(
        id=page_url(page),
        part_of=followers_url,
        items=items,
        total_items=total,
        actor=registry.actor_url(actor.user_id),
        first=page_url(1),
        last=page_url(last_page),
        next=page_url(page + 1) if page < last_page else "",
        prev=page_url(page - 1) if page > 1 else "",
    )

    return web.json_response(collection.to_dict(), content_type=AP_CONTENT_TYPE)


async def handle_inbox(request: web.Request) -> web.Response:
    """Handle incoming ActivityPub activities (shared or per-actor inbox)."""
    config: FederationConfig = request.app["config"]
    inbox: InboxProcessor = request.app["inbox"]

    recipient_user_id = None
    if "id" in request.match_info:
        async with request.app["session_maker"]() as session:
            try:
                recipient = await request.app["registry"].resolve(session, request.match_info["id"])
            except ActorNotFoundError:
                return error_response("Actor not found", "not_found", 404)
        recipient_user_id = recipient.user_id

    if request.content_type not in (AP_CONTENT_TYPE, LD_CONTENT_TYPE):
        return error_response(
            f"Unsupported content type: {request.content_type}", "invalid_content_type", 400
        )

    body = await request.read()
    try:
        activity = json.loads(body)
    except ValueError:
        return error_response("Invalid JSON", "invalid_json", 400, ["body"])

    try:
        inbox.validate(activity)
    except ActivityValidationError as e:
        return error_response(str(e), e.code, 400, [e.param])

    logger.info(
        "Received inbox activity",
        recipient=recipient_user_id,
        activity_type=activity.get("type"),
        activity_id=activity.get("id"),
    )

    signed_by = None
    if not config.security.defer_signature_verification:
        async with request.app["session_maker"]() as session:
            try:
                remote = await request.app["signatures"].verify_request(
                    session,
                    request.headers,
                    request.method,
                    request.path_qs,
                    body,
                )
            except SignatureVerificationError as e:
                logger.warning("Signature verification failed", activity_id=activity.get("id"), error=str(e))
                return error_response(str(e), "signature_verification", 401)
        signed_by = remote.actor_id

    inbox.submit(InboxEnvelope(
        activity=activity,
        method=request.method,
        path=request.path_qs,
        headers=dict(request.headers),
        body=body,
        recipient_user_id=recipient_user_id,
        signed_by=signed_by,
    ))

    return web.json_response({}, status=202)


async def handle_health(request: web.Request) -> web.Response:
    """Health check endpoint."""
    return web.json_response({"status": "ok"})


def main() -> None:
    """Main entry point.

    Runs a standalone server whose only local actor is the blog actor.
    Host applications embed :class:`ActivityPubServer` with their own
    :class:`ContentProvider`.
    """
    config = load_config()
    configure_logging(config.log_level)

    content = InMemoryContentProvider(
        home_url=config.server.base_url,
        site_name=config.blog_name,
    )
    server = ActivityPubServer(config, content)

    try:
        asyncio.run(server.run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
