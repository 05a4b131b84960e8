"""fedipress: ActivityPub federation core for blogs.

This package federates the posts and authors of a blog-style content system
with Mastodon and other Fediverse servers.

Key components:
- activitypub_types: ActivityPub/ActivityStreams protocol types
- config: Pydantic configuration management
- models: SQLAlchemy database models
- content: Interface to the host content system
- actors: Local actor registry, keys and WebFinger; remote actor cache
- followers: Follower store
- transformer: Content item to Note/Article/Page transformation
- signatures: HTTP Signatures
- federation: Signed delivery and the delivery queue
- dispatcher: Activity building and dispatch
- inbox: Inbound activity processing
- migration: Versioned data migrations
- main: HTTP server entry point
"""

from .activitypub_types import (
    Activity,
    ActivityType,
    ActivityValidationError,
    Actor,
    Article,
    ContentObject,
    Note,
    ObjectType,
    OrderedCollection,
    OrderedCollectionPage,
    Page,
    PublicKey,
    is_activity_public,
)
from .actors import ActorNotFoundError, ActorRegistry, RemoteActorCache
from .config import (
    ActorMode,
    ContentConfig,
    ContentVisibility,
    DatabaseConfig,
    DeliveryConfig,
    FederationConfig,
    ObjectTypeSetting,
    SecurityConfig,
    ServerConfig,
    load_config,
)
from .content import ContentItem, ContentProvider, HostUser, InMemoryContentProvider, MediaItem, Term
from .dispatcher import ActivityDispatcher
from .federation import DeliveryError, DeliveryQueue, DeliveryResult, FederationService
from .followers import FollowerStore
from .inbox import InboxEnvelope, InboxProcessor
from .migration import MigrationLockTimeout, Migrator
from .models import ExternalObject, Follower, Interaction, LocalActor, RemoteActor, init_db
from .signatures import SignatureEngine, SignatureVerificationError
from .transformer import (
    DefaultObjectTypeStrategy,
    HandleMentionExtractor,
    MentionExtractor,
    ObjectTypeStrategy,
    PostTransformer,
)

__version__ = "0.1.0"

__all__ = [
    # Types
    "Activity",
    "ActivityType",
    "ActivityValidationError",
    "Actor",
    "Article",
    "ContentObject",
    "Note",
    "ObjectType",
    "OrderedCollection",
    "OrderedCollectionPage",
    "Page",
    "PublicKey",
    "is_activity_public",
    # Config
    "ActorMode",
    "ContentConfig",
    "ContentVisibility",
    "DatabaseConfig",
    "DeliveryConfig",
    "FederationConfig",
    "ObjectTypeSetting",
    "SecurityConfig",
    "ServerConfig",
    "load_config",
    # Content
    "ContentItem",
    "ContentProvider",
    "HostUser",
    "InMemoryContentProvider",
    "MediaItem",
    "Term",
    # Actors
    "ActorNotFoundError",
    "ActorRegistry",
    "RemoteActorCache",
    # Followers
    "FollowerStore",
    # Transformer
    "DefaultObjectTypeStrategy",
    "HandleMentionExtractor",
    "MentionExtractor",
    "ObjectTypeStrategy",
    "PostTransformer",
    # Signatures
    "SignatureEngine",
    "SignatureVerificationError",
    # Federation
    "ActivityDispatcher",
    "DeliveryError",
    "DeliveryQueue",
    "DeliveryResult",
    "FederationService",
    # Inbox
    "InboxEnvelope",
    "InboxProcessor",
    # Migration
    "MigrationLockTimeout",
    "Migrator",
    # Models
    "ExternalObject",
    "Follower",
    "Interaction",
    "LocalActor",
    "RemoteActor",
    "init_db",
]
