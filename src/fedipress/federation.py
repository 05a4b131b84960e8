"""Outbound federation: signed delivery of activities to remote inboxes.

Implements:
- Signed POST of an activity body to one inbox, with timeout and retries
- Concurrent delivery to many inboxes
- A worker queue that isolates recipients and tracks follower failures
"""

import asyncio
from dataclasses import dataclass

import aiohttp
import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from .activitypub_types import AP_ACCEPT_HEADER, AP_CONTENT_TYPE
from .actors import ActorRegistry
from .config import FederationConfig
from .followers import FollowerStore
from .models import LocalActor
from .signatures import SignatureEngine

logger = structlog.get_logger()

# 4xx responses worth retrying
RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})


class DeliveryError(Exception):
    """Delivery to a remote inbox failed."""

    def __init__(self, message: str, inbox_url: str, status: int | None = None):
        super().__init__(message)
        self.inbox_url = inbox_url
        self.status = status

    @property
    def retryable(self) -> bool:
        if self.status is None:
            return True
        return self.status >= 500 or self.status in RETRYABLE_CLIENT_STATUSES


@dataclass
class DeliveryResult:
    """Outcome of delivering one body to one inbox."""
    inbox_url: str
    success: bool
    error: str | None = None
    attempts: int = 0


@dataclass
class DeliveryJob:
    """One queued delivery."""
    user_id: int  # Sending local actor
    inbox_url: str
    body: bytes
    activity_id: str = ""
    # Count failures against the followers behind this inbox
    track_followers: bool = True


class FederationService:
    """Sends signed activities to remote inboxes."""

    def __init__(
        self,
        config: FederationConfig,
        registry: ActorRegistry,
        signatures: SignatureEngine,
        session_maker: async_sessionmaker,
        http_session: aiohttp.ClientSession | None = None,
    ):
        """Initialize federation service.

        Args:
            config: Federation configuration
            registry: Local actor registry
            signatures: Signature engine for outgoing requests
            session_maker: Database session factory
            http_session: Optional shared HTTP session
        """
        self.config = config
        self.registry = registry
        self.signatures = signatures
        self.session_maker = session_maker
        self.delivery = config.delivery
        self._http_session = http_session
        self._owns_session = http_session is None

    async def _get_http_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._http_session is None or self._http_session.closed:
            self._http_session = aiohttp.ClientSession()
            self._owns_session = True
        return self._http_session

    async def close(self) -> None:
        """Close HTTP session."""
        if self._owns_session and self._http_session and not self._http_session.closed:
            await self._http_session.close()

    async def _sender(self, user_id: int) -> LocalActor:
        async with self.session_maker() as session:
            actor = await self.registry.get_local_actor(session, user_id)
            return await self.registry.ensure_keys(session, actor)

    async def post(self, actor: LocalActor, inbox_url: str, body: bytes) -> int:
        """POST a signed body to an inbox once.

        Returns:
            HTTP status of the response

        Raises:
            DeliveryError: On transport errors, timeouts and non-2xx responses
        """
        async with self.session_maker() as session:
            signed = await self.signatures.sign_request(session, actor, "POST", inbox_url, body)

        headers = {
            "Content-Type": AP_CONTENT_TYPE,
            "Accept": AP_ACCEPT_HEADER,
            "User-Agent": self.config.server.user_agent,
            **signed,
        }

        http_session = await self._get_http_session()
        timeout = aiohttp.ClientTimeout(total=self.delivery.timeout_seconds)
        try:
            async with http_session.post(
                inbox_url,
                data=body,
                headers=headers,
                timeout=timeout,
            ) as response:
                if 200 <= response.status < 300:
                    return response.status
                error = await response.text()
                raise DeliveryError(
                    f"HTTP {response.status}: {error[:100]}",
                    inbox_url,
                    status=response.status,
                )
        except asyncio.TimeoutError as e:
            raise DeliveryError("Timed out", inbox_url) from e
        except aiohttp.ClientError as e:
            raise DeliveryError(str(e) or type(e).__name__, inbox_url) from e

    async def deliver(self, inbox_url: str, body: bytes, user_id: int) -> DeliveryResult:
        """Deliver a body to one inbox, retrying with exponential backoff.

        Never raises for delivery failures; they are reported in the result.
        """
        actor = await self._sender(user_id)

        error: DeliveryError | None = None
        attempts = 0
        for attempt in range(self.delivery.max_attempts):
            attempts = attempt + 1
            try:
                status = await self.post(actor, inbox_url, body)
            except DeliveryError as e:
                error = e
                logger.warning(
                    "Delivery attempt failed",
                    inbox=inbox_url,
                    attempt=attempts,
                    error=str(e),
                )
                if not e.retryable or attempts >= self.delivery.max_attempts:
                    break
                await asyncio.sleep(self.delivery.backoff_seconds * 2 ** attempt)
                continue

            logger.info("Delivered activity", inbox=inbox_url, status=status, attempts=attempts)
            return DeliveryResult(inbox_url, True, attempts=attempts)

        logger.error("Delivery failed", inbox=inbox_url, attempts=attempts, error=str(error))
        return DeliveryResult(inbox_url, False, error=str(error), attempts=attempts)

    async def deliver_many(
        self,
        inboxes: list[str],
        body: bytes,
        user_id: int,
    ) -> list[DeliveryResult]:
        """Deliver a body to many inboxes concurrently.

        A failing or slow inbox does not affect the others.
        """
        semaphore = asyncio.Semaphore(self.delivery.workers)

        async def deliver_one(inbox_url: str) -> DeliveryResult:
            async with semaphore:
                return await self.deliver(inbox_url, body, user_id)

        return list(await asyncio.gather(*(deliver_one(inbox) for inbox in inboxes)))


class DeliveryQueue:
    """Background workers draining queued deliveries."""

    def __init__(
        self,
        config: FederationConfig,
        federation: FederationService,
        followers: FollowerStore,
        session_maker: async_sessionmaker,
    ):
        self.config = config
        self.federation = federation
        self.followers = followers
        self.session_maker = session_maker
        self._queue: asyncio.Queue[DeliveryJob] = asyncio.Queue()
        self._workers: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def pending(self) -> int:
        return self._queue.qsize()

    def enqueue(self, job: DeliveryJob) -> None:
        self._queue.put_nowait(job)
        logger.debug("Queued delivery", inbox=job.inbox_url, activity_id=job.activity_id)

    async def start(self) -> None:
        """Start the worker tasks."""
        if self._workers:
            return
        for i in range(self.config.delivery.workers):
            self._workers.append(asyncio.create_task(self._worker(i)))
        logger.info("Delivery queue started", workers=len(self._workers))

    async def join(self) -> None:
        """Wait until every queued delivery has been processed."""
        await self._queue.join()

    async def stop(self) -> None:
        """Stop the worker tasks. Queued deliveries that were not started are dropped."""
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Delivery queue stopped", dropped=self._queue.qsize())

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self.process(job)
            except Exception:
                logger.exception("Delivery worker error", worker=index, inbox=job.inbox_url)
            finally:
                self._queue.task_done()

    async def process(self, job: DeliveryJob) -> DeliveryResult:
        """Deliver one job and update the follower error counters."""
        result = await self.federation.deliver(job.inbox_url, job.body, job.user_id)

        if job.track_followers:
            async with self.session_maker() as session:
                if result.success:
                    await self.followers.record_delivery_success(session, job.user_id, job.inbox_url)
                else:
                    await self.followers.record_delivery_failure(
                        session, job.user_id, job.inbox_url, result.error or ""
                    )

        return result
