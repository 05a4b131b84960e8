"""HTTP Signatures (draft-cavage-http-signatures).

Outgoing requests are signed over ``(request-target) host date digest``
with the acting local actor's RSA key. Incoming requests are verified
against the sender's published key, with a bounded Date skew.
"""

import base64
import hashlib
import re
from datetime import datetime, timezone
from email.utils import format_datetime, parsedate_to_datetime
from typing import Mapping
from urllib.parse import urlparse

import structlog
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from sqlalchemy.ext.asyncio import AsyncSession

from .actors import ActorNotFoundError, ActorRegistry, RemoteActorCache
from .config import FederationConfig
from .models import LocalActor, RemoteActor

logger = structlog.get_logger()

SUPPORTED_ALGORITHMS = ("rsa-sha256", "hs2019")
DEFAULT_SIGNED_HEADERS = ["(request-target)", "host", "date", "digest"]
REQUIRED_SIGNED_HEADERS = ("(request-target)", "date")

_SIGNATURE_PARAM = re.compile(r'([a-zA-Z]+)="([^"]*)"')


class SignatureVerificationError(Exception):
    """Error verifying HTTP signature."""
    pass


def compute_digest(body: bytes) -> str:
    """Compute SHA-256 digest of request body.

    Args:
        body: Request body bytes

    Returns:
        Base64-encoded digest with algorithm prefix
    """
    digest = hashlib.sha256(body).digest()
    return f"SHA-256={base64.b64encode(digest).decode()}"


def http_date(value: datetime | None = None) -> str:
    """Format a datetime as an RFC 7231 HTTP date."""
    value = value or datetime.now(timezone.utc)
    return format_datetime(value.astimezone(timezone.utc), usegmt=True)


def create_signature_string(
    method: str,
    path: str,
    headers: Mapping[str, str],
    signed_headers: list[str],
) -> str:
    """Create the string to sign for HTTP signatures.

    Args:
        method: HTTP method
        path: Request path (with query string)
        headers: Request headers keyed by lowercase name
        signed_headers: Headers to include in signature

    Returns:
        Signature string
    """
    lines = []
    for header in signed_headers:
        if header == "(request-target)":
            lines.append(f"(request-target): {method.lower()} {path}")
        else:
            value = headers.get(header, "")
            lines.append(f"{header}: {value}")
    return "\n".join(lines)


def parse_signature_header(value: str) -> dict[str, str]:
    """Parse a Signature header into its parameters.

    Raises:
        SignatureVerificationError: If keyId or signature is missing
    """
    params = dict(_SIGNATURE_PARAM.findall(value or ""))
    if not params.get("keyId") or not params.get("signature"):
        raise SignatureVerificationError("Malformed Signature header")
    params.setdefault("algorithm", "rsa-sha256")
    params.setdefault("headers", "date")
    return params


def sign_request(
    private_key_pem: str,
    key_id: str,
    method: str,
    url: str,
    headers: dict[str, str],
    body: bytes | None = None,
) -> str:
    """Create HTTP Signature header for request.

    Args:
        private_key_pem: RSA private key in PEM format
        key_id: Public key ID (actor#main-key)
        method: HTTP method
        url: Full URL
        headers: Request headers (will be mutated to add Date, Digest, Host)
        body: Optional request body

    Returns:
        Signature header value
    """
    private_key = serialization.load_pem_private_key(
        private_key_pem.encode(),
        password=None,
    )

    parsed = urlparse(url)
    path = parsed.path or "/"
    if parsed.query:
        path += f"?{parsed.query}"

    if "date" not in headers and "Date" not in headers:
        headers["Date"] = http_date()

    if body is not None:
        headers["Digest"] = compute_digest(body)

    headers["Host"] = parsed.netloc

    signed_headers = list(DEFAULT_SIGNED_HEADERS)
    if body is None:
        signed_headers.remove("digest")

    sig_string = create_signature_string(
        method=method,
        path=path,
        headers={k.lower(): v for k, v in headers.items()},
        signed_headers=signed_headers,
    )

    signature = private_key.sign(
        sig_string.encode(),
        padding.PKCS1v15(),
        hashes.SHA256(),
    )

    sig_b64 = base64.b64encode(signature).decode()

    return (
        f'keyId="{key_id}",'
        f'algorithm="rsa-sha256",'
        f'headers="{" ".join(signed_headers)}",'
        f'signature="{sig_b64}"'
    )


def verify_signature(public_key_pem: str, signature: bytes, data: bytes) -> bool:
    """Check an RSA-SHA256 PKCS#1 v1.5 signature."""
    try:
        public_key = serialization.load_pem_public_key(public_key_pem.encode())
    except ValueError:
        return False
    if not isinstance(public_key, rsa.RSAPublicKey):
        return False
    try:
        public_key.verify(signature, data, padding.PKCS1v15(), hashes.SHA256())
    except InvalidSignature:
        return False
    return True


class SignatureEngine:
    """Signs outgoing and verifies incoming federation requests."""

    def __init__(
        self,
        config: FederationConfig,
        registry: ActorRegistry,
        remote_actors: RemoteActorCache,
    ):
        self.config = config
        self.registry = registry
        self.remote_actors = remote_actors
        self.max_skew = config.security.signature_max_skew_seconds

    async def sign_request(
        self,
        session: AsyncSession,
        actor: LocalActor,
        method: str,
        url: str,
        body: bytes | None = None,
    ) -> dict[str, str]:
        """Return the Signature, Digest, Date and Host headers for a request."""
        actor = await self.registry.ensure_keys(session, actor)
        headers: dict[str, str] = {}
        headers["Signature"] = sign_request(
            private_key_pem=actor.private_key_pem,
            key_id=self.registry.key_id(actor.user_id),
            method=method,
            url=url,
            headers=headers,
            body=body,
        )
        return headers

    def _check_date(self, value: str) -> None:
        try:
            sent = parsedate_to_datetime(value)
        except (TypeError, ValueError) as e:
            raise SignatureVerificationError(f"Invalid Date header: {value}") from e
        if sent.tzinfo is None:
            sent = sent.replace(tzinfo=timezone.utc)

        skew = abs((datetime.now(timezone.utc) - sent).total_seconds())
        if skew > self.max_skew:
            raise SignatureVerificationError(f"Date outside allowed skew: {value}")

    async def verify_request(
        self,
        session: AsyncSession,
        headers: Mapping[str, str],
        method: str,
        path: str,
        body: bytes | None = None,
    ) -> RemoteActor:
        """Verify the signature of an incoming request.

        Args:
            session: Database session
            headers: Request headers (case-insensitive mapping or any mapping)
            method: HTTP method
            path: Request path with query string
            body: Raw request body

        Returns:
            The remote actor that signed the request

        Raises:
            SignatureVerificationError: If the request is not validly signed
        """
        lowered = {k.lower(): v for k, v in headers.items()}

        params = parse_signature_header(lowered.get("signature", ""))
        if params["algorithm"].lower() not in SUPPORTED_ALGORITHMS:
            raise SignatureVerificationError(f"Unsupported algorithm: {params['algorithm']}")

        signed_headers = params["headers"].lower().split()
        for required in REQUIRED_SIGNED_HEADERS:
            if required not in signed_headers:
                raise SignatureVerificationError(f"Header not signed: {required}")
        for header in signed_headers:
            if header != "(request-target)" and header not in lowered:
                raise SignatureVerificationError(f"Signed header missing: {header}")

        if "date" not in lowered:
            raise SignatureVerificationError("Date header missing")
        self._check_date(lowered["date"])

        if body:
            if "digest" not in signed_headers:
                raise SignatureVerificationError("Digest not signed")
            digests = [d.strip() for d in lowered["digest"].split(",")]
            if compute_digest(body) not in digests:
                raise SignatureVerificationError("Digest mismatch")

        try:
            signature = base64.b64decode(params["signature"], validate=True)
        except ValueError as e:
            raise SignatureVerificationError("Signature is not valid base64") from e

        sig_string = create_signature_string(method, path, lowered, signed_headers).encode()
        key_id = params["keyId"]

        try:
            remote = await self.remote_actors.get_public_key(session, key_id)
        except ActorNotFoundError as e:
            raise SignatureVerificationError(f"Cannot resolve keyId {key_id}: {e}") from e

        if verify_signature(remote.public_key_pem, signature, sig_string):
            return remote

        # The key may have been rotated since it was cached
        try:
            remote = await self.remote_actors.get_public_key(session, key_id, force=True)
        except ActorNotFoundError as e:
            raise SignatureVerificationError(f"Cannot resolve keyId {key_id}: {e}") from e

        if verify_signature(remote.public_key_pem, signature, sig_string):
            logger.info("Signature verified after key refresh", key_id=key_id)
            return remote

        raise SignatureVerificationError(f"Signature mismatch for {key_id}")
