"""Host content-system interface.

The federation core never reads the blog's storage directly. Posts, users
and media are reached through a :class:`ContentProvider`, which the host
application implements. :class:`InMemoryContentProvider` is a complete
implementation backed by dictionaries, used for development and tests.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .config import ContentVisibility


@dataclass
class HostUser:
    """A user of the host content system."""
    id: int
    username: str
    display_name: str = ""
    bio: str = ""
    avatar_url: str = ""
    can_publish: bool = True
    # Ordered profile fields (label, value)
    profile_fields: list[tuple[str, str]] = field(default_factory=list)
    registered: datetime | None = None


@dataclass
class MediaItem:
    """An entry of the host media library."""
    id: int
    url: str
    mime_type: str
    title: str = ""
    alt: str = ""
    width: int | None = None
    height: int | None = None
    # Resized rendition used for images ("large" size)
    large_url: str = ""

    @property
    def kind(self) -> str:
        """Top-level media type: image, audio, video..."""
        return self.mime_type.split("/", 1)[0]


@dataclass
class Term:
    """A tag attached to a content item."""
    name: str
    url: str


@dataclass
class ContentItem:
    """A post or page of the host content system."""
    id: int
    author_id: int
    title: str = ""
    content: str = ""
    excerpt: str = ""
    permalink: str = ""
    shortlink: str = ""
    post_type: str = "post"
    post_format: str = "standard"
    status: str = "publish"
    supports_title: bool = True
    published: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    modified: datetime | None = None
    tags: list[Term] = field(default_factory=list)
    thumbnail_id: int | None = None
    # Enclosures: dicts with url and mediaType
    enclosures: list[dict[str, Any]] = field(default_factory=list)
    visibility: ContentVisibility | None = None
    content_warning: str = ""
    locale: str = ""
    in_reply_to: str | None = None

    @property
    def is_draft(self) -> bool:
        return self.status == "draft"


class ContentProvider(ABC):
    """Capability the host content system exposes to the federation core."""

    @abstractmethod
    def get_user(self, user_id: int) -> HostUser | None:
        """Return a host user by id."""

    @abstractmethod
    def get_user_by_username(self, username: str) -> HostUser | None:
        """Return a host user by login name."""

    @abstractmethod
    def list_users(self) -> list[HostUser]:
        """Return all host users."""

    @abstractmethod
    def get_item(self, item_id: int) -> ContentItem | None:
        """Return a content item by id."""

    @abstractmethod
    def find_item_by_url(self, url: str) -> ContentItem | None:
        """Resolve a permalink or object id to a local content item."""

    @abstractmethod
    def get_media(self, media_id: int) -> MediaItem | None:
        """Return a media library entry."""

    @abstractmethod
    def find_media_id_by_url(self, url: str) -> int | None:
        """Return the id of the media entry whose original file has this URL."""

    @property
    @abstractmethod
    def home_url(self) -> str:
        """Front page URL of the host site."""

    @property
    @abstractmethod
    def upload_base_url(self) -> str:
        """URL prefix under which uploaded media is served."""

    @property
    def site_name(self) -> str:
        return ""

    @property
    def site_description(self) -> str:
        return ""

    @property
    def site_icon_url(self) -> str:
        return ""


class InMemoryContentProvider(ContentProvider):
    """Dictionary-backed content provider."""

    def __init__(
        self,
        home_url: str,
        upload_base_url: str = "",
        site_name: str = "",
        site_description: str = "",
        site_icon_url: str = "",
    ):
        self._home_url = home_url.rstrip("/")
        self._upload_base_url = (upload_base_url or f"{self._home_url}/uploads").rstrip("/")
        self._site_name = site_name
        self._site_description = site_description
        self._site_icon_url = site_icon_url
        self.users: dict[int, HostUser] = {}
        self.items: dict[int, ContentItem] = {}
        self.media: dict[int, MediaItem] = {}

    def add_user(self, user: HostUser) -> HostUser:
        self.users[user.id] = user
        return user

    def add_item(self, item: ContentItem) -> ContentItem:
        if not item.permalink:
            item.permalink = f"{self._home_url}/?p={item.id}"
        self.items[item.id] = item
        return item

    def add_media(self, media: MediaItem) -> MediaItem:
        self.media[media.id] = media
        return media

    def get_user(self, user_id: int) -> HostUser | None:
        return self.users.get(user_id)

    def get_user_by_username(self, username: str) -> HostUser | None:
        for user in self.users.values():
            if user.username == username:
                return user
        return None

    def list_users(self) -> list[HostUser]:
        return sorted(self.users.values(), key=lambda u: u.id)

    def get_item(self, item_id: int) -> ContentItem | None:
        return self.items.get(item_id)

    def find_item_by_url(self, url: str) -> ContentItem | None:
        prefix = f"{self._home_url}/?p="
        if url.startswith(prefix) and url[len(prefix):].isdigit():
            return self.items.get(int(url[len(prefix):]))
        for item in self.items.values():
            if item.permalink == url:
                return item
        return None

    def get_media(self, media_id: int) -> MediaItem | None:
        return self.media.get(media_id)

    def find_media_id_by_url(self, url: str) -> int | None:
        for media in self.media.values():
            if media.url == url:
                return media.id
        return None

    @property
    def home_url(self) -> str:
        return self._home_url

    @property
    def upload_base_url(self) -> str:
        return self._upload_base_url

    @property
    def site_name(self) -> str:
        return self._site_name

    @property
    def site_description(self) -> str:
        return self._site_description

    @property
    def site_icon_url(self) -> str:
        return self._site_icon_url
