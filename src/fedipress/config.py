"""Configuration for the fedipress federation core."""

from enum import Enum

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_POST_CONTENT = '[ap_title type="html"]\n\n[ap_content]\n\n[ap_hashtags]'


class ActorMode(str, Enum):
    """Which local actors federate.

    - ACTOR: one actor per author, the blog actor is disabled
    - BLOG: only the blog actor, all posts are attributed to it
    - ACTOR_BLOG: authors federate and the blog actor announces their posts
    """
    ACTOR = "actor"
    BLOG = "blog"
    ACTOR_BLOG = "actor_blog"


class ObjectTypeSetting(str, Enum):
    """How the object type of a post is chosen."""
    AUTO = "auto"
    NOTE = "note"


class ContentVisibility(str, Enum):
    """Federation visibility of a content item."""
    PUBLIC = "public"
    QUIET_PUBLIC = "quiet_public"
    LOCAL = "local"


class ServerConfig(BaseSettings):
    """ActivityPub server settings."""

    model_config = SettingsConfigDict(env_prefix="AP_", frozen=True)

    domain: str = Field(
        default="blog.example",
        description="Domain used in acct: handles (e.g., @admin@blog.example)"
    )
    base_url: str = Field(
        default="https://blog.example",
        description="Public URL of this server (must be HTTPS for federation)"
    )
    host: str = Field(
        default="0.0.0.0",
        description="Host address for HTTP server"
    )
    port: int = Field(
        default=8080,
        ge=1,
        le=65535,
        description="Port for HTTP server"
    )
    user_agent: str = Field(
        default="fedipress/0.1.0",
        description="User-Agent sent with outgoing requests"
    )

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Ensure base URL uses HTTPS (required for ActivityPub)."""
        if v and not v.startswith("https://"):
            # Allow http for development
            import warnings
            warnings.warn("ActivityPub base URL should use HTTPS for production")
        return v.rstrip("/")


class DatabaseConfig(BaseSettings):
    """Database settings."""

    model_config = SettingsConfigDict(env_prefix="DB_", frozen=True)

    url: str = Field(
        default="sqlite+aiosqlite:///fedipress.db",
        description="SQLAlchemy database URL"
    )


class ContentConfig(BaseSettings):
    """Object transformation settings."""

    model_config = SettingsConfigDict(env_prefix="CONTENT_", frozen=True)

    object_type: ObjectTypeSetting = Field(
        default=ObjectTypeSetting.AUTO,
        description="Object type strategy (auto picks Note/Article/Page per post)"
    )
    custom_post_content: str = Field(
        default=DEFAULT_POST_CONTENT,
        description="Content template used when object_type is fixed"
    )
    max_attachments: int = Field(
        default=3,
        ge=0,
        le=50,
        description="Maximum media attachments per object"
    )
    default_visibility: ContentVisibility = Field(
        default=ContentVisibility.PUBLIC,
        description="Visibility applied to items that carry none"
    )
    note_length: int = Field(
        default=400,
        ge=0,
        description="Posts with at most this much plain text become Notes"
    )
    excerpt_length: int = Field(
        default=400,
        ge=1,
        description="Length of generated summaries"
    )
    max_content_length: int = Field(
        default=100_000,
        ge=100,
        description="Longer content is replaced by its summary and a permalink"
    )
    locale: str = Field(
        default="en_US",
        description="Site locale used for contentMap/nameMap keys"
    )
    preferred_media_type: str = Field(
        default="",
        description="Restrict attachments to image, audio or video (empty = by post format)"
    )


class DeliveryConfig(BaseSettings):
    """Outbound delivery settings."""

    model_config = SettingsConfigDict(env_prefix="DELIVERY_", frozen=True)

    timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Per-request timeout for a single inbox POST"
    )
    max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per recipient before the delivery counts as failed"
    )
    backoff_seconds: float = Field(
        default=2.0,
        ge=0,
        description="Base delay between attempts (doubled after each failure)"
    )
    workers: int = Field(
        default=8,
        ge=1,
        le=256,
        description="Concurrent delivery workers"
    )
    follower_error_threshold: int = Field(
        default=5,
        ge=1,
        description="Consecutive failed dispatch cycles before a follower is pruned"
    )
    use_shared_inbox: bool = Field(
        default=True,
        description="Deliver once per shared inbox instead of once per follower"
    )


class SecurityConfig(BaseSettings):
    """Signature and remote fetch settings."""

    model_config = SettingsConfigDict(env_prefix="SECURITY_", frozen=True)

    defer_signature_verification: bool = Field(
        default=False,
        description="Accept unsigned requests and verify Create/Update during processing"
    )
    signature_max_skew_seconds: int = Field(
        default=12 * 60 * 60,
        ge=0,
        description="Allowed clock skew of the Date header"
    )
    remote_actor_ttl_seconds: int = Field(
        default=24 * 60 * 60,
        ge=0,
        description="How long fetched remote actor documents stay fresh"
    )
    fetch_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Timeout for fetching remote actor documents"
    )
    disable_incoming_interactions: bool = Field(
        default=False,
        description="Ignore inbound replies, likes and announces"
    )


class FederationConfig(BaseSettings):
    """Main configuration combining all settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Sub-configs
    server: ServerConfig = Field(default_factory=ServerConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    content: ContentConfig = Field(default_factory=ContentConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)

    # Actors
    actor_mode: ActorMode = Field(
        default=ActorMode.ACTOR_BLOG,
        description="Which local actors federate"
    )
    disabled_users: list[int] = Field(
        default_factory=list,
        description="Host user ids that never federate"
    )
    blog_username: str = Field(
        default="blog",
        description="preferredUsername of the blog actor"
    )
    blog_name: str = Field(
        default="Blog",
        description="Display name of the blog actor"
    )

    # Migration
    migration_lock_timeout_seconds: int = Field(
        default=1800,
        ge=1,
        description="A migration lock older than this is force-released"
    )
    migration_retry_seconds: float = Field(
        default=60.0,
        ge=0,
        description="Delay before a dispatch deferred by a held migration lock is retried"
    )

    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )

    @field_validator("blog_username")
    @classmethod
    def validate_blog_username(cls, v: str) -> str:
        """The blog username must not look like a numeric user id."""
        if not v or v.isdigit():
            raise ValueError("blog_username must be a non-numeric name")
        return v

    @property
    def single_user_mode(self) -> bool:
        """Whether every post is published by the blog actor."""
        return self.actor_mode == ActorMode.BLOG

    @classmethod
    def from_yaml(cls, path: str) -> "FederationConfig":
        """Load configuration from YAML file."""
        import yaml
        with open(path) as f:
            data = yaml.safe_load(f)
        return cls.model_validate(data)


def load_config() -> FederationConfig:
    """Load configuration from environment and .env file."""
    return FederationConfig()
