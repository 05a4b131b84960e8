"""ActivityPub protocol types and utilities for fedipress.

This module implements the ActivityStreams data types the federation core
exchanges with Mastodon and other Fediverse servers. Each content type
(Note, Article, Page) is its own dataclass, validated at construction.

References:
- ActivityPub spec: https://www.w3.org/TR/activitypub/
- ActivityStreams 2.0: https://www.w3.org/TR/activitystreams-core/
- Mastodon API: https://docs.joinmastodon.org/spec/activitypub/
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, TypeAlias
from urllib.parse import urlparse

# JSON-LD contexts for ActivityPub
ACTIVITY_STREAMS_CONTEXT = "https://www.w3.org/ns/activitystreams"
SECURITY_CONTEXT = "https://w3id.org/security/v1"
MASTODON_CONTEXT = {
    "manuallyApprovesFollowers": "as:manuallyApprovesFollowers",
    "sensitive": "as:sensitive",
    "Hashtag": "as:Hashtag",
    "toot": "http://joinmastodon.org/ns#",
    "discoverable": "toot:discoverable",
    "schema": "http://schema.org#",
    "PropertyValue": "schema:PropertyValue",
    "value": "schema:value",
}

# Standard ActivityPub context
AP_CONTEXT: list[str | dict] = [
    ACTIVITY_STREAMS_CONTEXT,
    SECURITY_CONTEXT,
    MASTODON_CONTEXT,
]

# Content types
AP_CONTENT_TYPE = "application/activity+json"
LD_CONTENT_TYPE = "application/ld+json"
AP_ACCEPT_HEADER = 'application/activity+json, application/ld+json; profile="https://www.w3.org/ns/activitystreams"'

# Public addressing
AS_PUBLIC = "https://www.w3.org/ns/activitystreams#Public"
PUBLIC_ALIASES = frozenset({AS_PUBLIC, "as:Public", "Public"})

# Type aliases
JsonDict: TypeAlias = dict[str, Any]


class ActivityType(str, Enum):
    """ActivityPub activity types."""
    # Core activities
    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"

    # Social activities
    FOLLOW = "Follow"
    ACCEPT = "Accept"
    REJECT = "Reject"
    UNDO = "Undo"

    # Reactions
    LIKE = "Like"
    ANNOUNCE = "Announce"  # Boost/reblog


class ObjectType(str, Enum):
    """ActivityPub object types."""
    # Actors
    PERSON = "Person"
    SERVICE = "Service"
    APPLICATION = "Application"
    GROUP = "Group"
    ORGANIZATION = "Organization"

    # Content
    NOTE = "Note"
    ARTICLE = "Article"
    PAGE = "Page"
    IMAGE = "Image"
    DOCUMENT = "Document"
    TOMBSTONE = "Tombstone"

    # Collections
    ORDERED_COLLECTION = "OrderedCollection"
    ORDERED_COLLECTION_PAGE = "OrderedCollectionPage"


ACTOR_TYPES = frozenset({
    ObjectType.PERSON,
    ObjectType.SERVICE,
    ObjectType.APPLICATION,
    ObjectType.GROUP,
    ObjectType.ORGANIZATION,
})


class ActivityValidationError(Exception):
    """Inbound activity is malformed.

    ``param`` names the offending field, ``code`` classifies the problem:
    ``missing_param`` for absent fields, ``invalid_param`` for fields that are
    present but unusable.
    """

    def __init__(self, message: str, param: str, code: str = "invalid_param"):
        super().__init__(message)
        self.param = param
        self.code = code


def format_timestamp(value: datetime) -> str:
    """Format a datetime as an ActivityStreams UTC timestamp."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def now_timestamp() -> str:
    """Current time as an ActivityStreams UTC timestamp."""
    return format_timestamp(datetime.now(timezone.utc))


@dataclass
class PublicKey:
    """RSA public key for HTTP signatures."""
    id: str  # e.g., https://blog.example/actors/1#main-key
    owner: str  # Actor ID
    public_key_pem: str

    def to_dict(self) -> JsonDict:
        """Convert to ActivityPub JSON-LD format."""
        return {
            "id": self.id,
            "owner": self.owner,
            "publicKeyPem": self.public_key_pem,
        }


@dataclass
class Actor:
    """ActivityPub Actor (Person, Application, Group...).

    Local actors represent blog authors and the blog itself; remote actors
    are parsed from fetched documents.
    """
    id: str  # https://blog.example/actors/1
    type: ObjectType = ObjectType.PERSON
    preferred_username: str = ""
    name: str = ""  # Display name
    summary: str = ""  # Bio/about
    url: str = ""  # Profile URL
    inbox: str = ""
    outbox: str = ""
    followers: str = ""
    following: str = ""
    shared_inbox: str = ""
    public_key: PublicKey | None = None
    icon: JsonDict | None = None  # Avatar
    image: JsonDict | None = None  # Header/banner
    manually_approves_followers: bool = False
    discoverable: bool = True
    published: str = ""  # ISO timestamp
    # Ordered profile fields rendered as PropertyValue attachments
    fields: list[tuple[str, str]] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("actor id is required")
        if self.type not in ACTOR_TYPES:
            raise ValueError(f"not an actor type: {self.type}")

    def to_dict(self) -> JsonDict:
        """Convert to ActivityPub JSON-LD format."""
        actor = {
            "@context": AP_CONTEXT,
            "id": self.id,
            "type": self.type.value,
            "preferredUsername": self.preferred_username,
            "name": self.name or self.preferred_username,
            "summary": self.summary,
            "url": self.url or self.id,
            "inbox": self.inbox,
            "outbox": self.outbox,
            "followers": self.followers,
            "following": self.following,
            "manuallyApprovesFollowers": self.manually_approves_followers,
            "discoverable": self.discoverable,
        }

        if self.shared_inbox:
            actor["endpoints"] = {"sharedInbox": self.shared_inbox}

        if self.public_key:
            actor["publicKey"] = self.public_key.to_dict()

        if self.icon:
            actor["icon"] = self.icon

        if self.image:
            actor["image"] = self.image

        if self.published:
            actor["published"] = self.published

        if self.fields:
            actor["attachment"] = [
                {"type": "PropertyValue", "name": name, "value": value}
                for name, value in self.fields
            ]

        return actor


@dataclass
class ContentObject:
    """Federated representation of a content item.

    Not instantiated directly: use :class:`Note`, :class:`Article` or
    :class:`Page`, which fix the ActivityStreams ``type``.
    """
    TYPE: ClassVar[ObjectType]

    id: str
    attributed_to: str
    content: str = ""
    published: str = ""
    updated: str | None = None
    url: str = ""
    name: str | None = None
    summary: str | None = None
    content_map: dict[str, str] | None = None
    name_map: dict[str, str] | None = None
    summary_map: dict[str, str] | None = None
    to: list[str] = field(default_factory=list)
    cc: list[str] = field(default_factory=list)
    audience: str | None = None
    in_reply_to: str | None = None
    sensitive: bool = False
    tag: list[JsonDict] = field(default_factory=list)  # Hashtags, mentions
    attachment: list[JsonDict] = field(default_factory=list)  # Media
    image: JsonDict | None = None  # Featured image

    def __post_init__(self) -> None:
        if not hasattr(self, "TYPE"):
            raise TypeError("use Note, Article or Page")
        if not self.id:
            raise ValueError("object id is required")
        if not self.attributed_to:
            raise ValueError("attributedTo is required")

    @property
    def type(self) -> ObjectType:
        return self.TYPE

    def to_dict(self, with_context: bool = False) -> JsonDict:
        """Convert to ActivityPub JSON-LD format."""
        obj: JsonDict = {}
        if with_context:
            obj["@context"] = AP_CONTEXT

        obj.update({
            "id": self.id,
            "type": self.TYPE.value,
            "attributedTo": self.attributed_to,
            "content": self.content,
            "published": self.published or now_timestamp(),
            "to": self.to,
            "cc": self.cc,
            "url": self.url or self.id,
            "sensitive": self.sensitive,
        })

        optional = {
            "name": self.name,
            "summary": self.summary,
            "contentMap": self.content_map,
            "nameMap": self.name_map,
            "summaryMap": self.summary_map,
            "updated": self.updated,
            "audience": self.audience,
            "inReplyTo": self.in_reply_to,
            "image": self.image,
        }
        for key, value in optional.items():
            if value:
                obj[key] = value

        if self.tag:
            obj["tag"] = self.tag

        if self.attachment:
            obj["attachment"] = self.attachment

        return obj


class Note(ContentObject):
    """Short-form post."""
    TYPE = ObjectType.NOTE


class Article(ContentObject):
    """Long-form post with a title."""
    TYPE = ObjectType.ARTICLE


class Page(ContentObject):
    """Static page."""
    TYPE = ObjectType.PAGE


OBJECT_CLASSES: dict[str, type[ContentObject]] = {
    ObjectType.NOTE.value: Note,
    ObjectType.ARTICLE.value: Article,
    ObjectType.PAGE.value: Page,
}


@dataclass
class Activity:
    """ActivityPub Activity wrapper."""
    id: str
    type: ActivityType
    actor: str  # Actor ID performing the activity
    object: str | JsonDict  # Target object (ID or inline object)
    published: str = ""
    to: list[str] = field(default_factory=list)
    cc: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not isinstance(self.type, ActivityType):
            self.type = ActivityType(self.type)
        if not self.actor:
            raise ValueError("activity actor is required")
        if not self.object:
            raise ValueError("activity object is required")

    @property
    def object_id(self) -> str:
        """ID of the wrapped object, whether embedded or referenced."""
        if isinstance(self.object, dict):
            return self.object.get("id", "")
        return self.object

    def to_dict(self) -> JsonDict:
        """Convert to ActivityPub JSON-LD format."""
        activity = {
            "@context": AP_CONTEXT,
            "id": self.id,
            "type": self.type.value,
            "actor": self.actor,
            "object": self.object,
            "published": self.published or now_timestamp(),
        }

        if self.to:
            activity["to"] = self.to
        if self.cc:
            activity["cc"] = self.cc

        return activity


@dataclass
class OrderedCollection:
    """ActivityPub OrderedCollection root."""
    id: str
    total_items: int = 0
    first: str = ""  # First page URL
    last: str = ""  # Last page URL

    def to_dict(self) -> JsonDict:
        """Convert to ActivityPub JSON-LD format."""
        collection = {
            "@context": AP_CONTEXT,
            "id": self.id,
            "type": ObjectType.ORDERED_COLLECTION.value,
            "totalItems": self.total_items,
        }

        if self.first:
            collection["first"] = self.first
        if self.last:
            collection["last"] = self.last

        return collection


@dataclass
class OrderedCollectionPage:
    """Page of an OrderedCollection."""
    id: str
    part_of: str  # Parent collection ID
    items: list[str | JsonDict] = field(default_factory=list)
    total_items: int = 0
    actor: str = ""
    first: str = ""
    last: str = ""
    next: str = ""
    prev: str = ""

    def to_dict(self) -> JsonDict:
        """Convert to ActivityPub JSON-LD format."""
        page = {
            "@context": AP_CONTEXT,
            "id": self.id,
            "type": ObjectType.ORDERED_COLLECTION_PAGE.value,
            "partOf": self.part_of,
            "totalItems": self.total_items,
            "orderedItems": self.items,
        }

        if self.actor:
            page["actor"] = self.actor
        if self.first:
            page["first"] = self.first
        if self.last:
            page["last"] = self.last
        if self.next:
            page["next"] = self.next
        if self.prev:
            page["prev"] = self.prev

        return page


def _as_list(value: Any) -> list:
    if value is None or value == "":
        return []
    if isinstance(value, list):
        return value
    return [value]


def is_activity_public(data: JsonDict) -> bool:
    """Check whether an activity (or the object it wraps) is addressed publicly.

    Both the activity's own ``to``/``cc`` and those of an embedded object are
    inspected; each may be a single string or a list.
    """
    def addressed(container: Any) -> bool:
        if not isinstance(container, dict):
            return False
        recipients = _as_list(container.get("to")) + _as_list(container.get("cc"))
        return any(r in PUBLIC_ALIASES for r in recipients if isinstance(r, str))

    return addressed(data) or addressed(data.get("object"))


def parse_actor(data: JsonDict) -> Actor | None:
    """Parse an Actor from JSON-LD data.

    Args:
        data: JSON-LD actor document

    Returns:
        Actor instance or None if invalid
    """
    try:
        actor_type = data.get("type", "Person")
        if isinstance(actor_type, list):
            actor_type = actor_type[0]

        public_key = None
        if isinstance(data.get("publicKey"), dict):
            pk = data["publicKey"]
            public_key = PublicKey(
                id=pk.get("id", ""),
                owner=pk.get("owner", ""),
                public_key_pem=pk.get("publicKeyPem", ""),
            )

        icon = data.get("icon")
        if isinstance(icon, list):
            icon = icon[0] if icon else None

        endpoints = data.get("endpoints") or {}
        url = data.get("url")
        if not isinstance(url, str):
            url = data.get("id", "")
        known_types = {t.value for t in ACTOR_TYPES}

        return Actor(
            id=data.get("id", ""),
            type=ObjectType(actor_type) if actor_type in known_types else ObjectType.PERSON,
            preferred_username=data.get("preferredUsername", ""),
            name=data.get("name") or "",
            summary=data.get("summary") or "",
            url=url,
            inbox=data.get("inbox", ""),
            outbox=data.get("outbox", ""),
            followers=data.get("followers", ""),
            following=data.get("following", ""),
            shared_inbox=endpoints.get("sharedInbox", "") if isinstance(endpoints, dict) else "",
            public_key=public_key,
            icon=icon if isinstance(icon, dict) else None,
            image=data.get("image"),
            manually_approves_followers=data.get("manuallyApprovesFollowers", False),
            discoverable=data.get("discoverable", True),
            published=data.get("published", ""),
        )
    except (AttributeError, KeyError, TypeError, ValueError):
        return None


def parse_object(data: JsonDict) -> ContentObject | None:
    """Parse a Note, Article or Page from JSON-LD data.

    Args:
        data: JSON-LD object document

    Returns:
        ContentObject subclass instance or None if the type is unsupported
    """
    cls = OBJECT_CLASSES.get(data.get("type", ""))
    if cls is None:
        return None

    try:
        return cls(
            id=data.get("id", ""),
            attributed_to=data.get("attributedTo", ""),
            content=data.get("content", ""),
            published=data.get("published", ""),
            updated=data.get("updated"),
            url=data.get("url", ""),
            name=data.get("name"),
            summary=data.get("summary"),
            content_map=data.get("contentMap"),
            name_map=data.get("nameMap"),
            summary_map=data.get("summaryMap"),
            to=_as_list(data.get("to")),
            cc=_as_list(data.get("cc")),
            audience=data.get("audience"),
            in_reply_to=data.get("inReplyTo"),
            sensitive=bool(data.get("sensitive", False)),
            tag=_as_list(data.get("tag")),
            attachment=_as_list(data.get("attachment")),
            image=data.get("image"),
        )
    except (TypeError, ValueError):
        return None


def object_id_of(value: Any) -> str:
    """Return the id of an embedded object or the URI itself."""
    if isinstance(value, dict):
        value = value.get("id", "")
    return value if isinstance(value, str) else ""


def actor_id_of(value: Any) -> str:
    """Return the actor URI from an ``actor`` field (string or embedded)."""
    return object_id_of(value)


def extract_instance_domain(actor_id: str) -> str:
    """Extract instance domain from actor ID.

    Args:
        actor_id: Full actor ID URL (e.g., https://mastodon.social/users/alice)

    Returns:
        Instance domain (e.g., mastodon.social)
    """
    return urlparse(actor_id).netloc
