"""Transformation of host content items into ActivityStreams objects.

Implements:
- Object type selection (Note, Article, Page)
- Content templates with shortcode placeholders
- Addressing by visibility
- Media attachments from featured images, enclosures, blocks and inline images
- Hashtags and mentions
"""

import html
import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable

import structlog
from bs4 import BeautifulSoup

from .activitypub_types import (
    AS_PUBLIC,
    Article,
    ContentObject,
    JsonDict,
    Note,
    Page,
    format_timestamp,
)
from .actors import BLOG_USER_ID, ActorRegistry
from .config import ActorMode, ContentVisibility, FederationConfig, ObjectTypeSetting
from .content import ContentItem, ContentProvider, MediaItem

logger = structlog.get_logger()

DRAFT_PLACEHOLDER = "(This post is being modified)"

MEDIA_KINDS = ("image", "audio", "video")

BLOCK_TAGS = (
    "address", "article", "aside", "blockquote", "details", "div", "dl", "fieldset",
    "figcaption", "figure", "footer", "form", "h1", "h2", "h3", "h4", "h5", "h6",
    "header", "hr", "li", "main", "nav", "ol", "p", "pre", "section", "table", "ul",
)

_BLOCK_START = re.compile(r"^\s*<(?:%s)[\s>/]" % "|".join(BLOCK_TAGS), re.IGNORECASE)
_BLOCK_DELIMITER = re.compile(
    r"<!--\s+(?P<closer>/)?wp:(?P<name>[a-z][a-z0-9_-]*(?:/[a-z][a-z0-9_-]*)?)\s+"
    r"(?P<attrs>\{.*?\}\s+)?(?P<void>/)?-->",
    re.DOTALL,
)
_SHORTCODE = re.compile(r"\[(?P<tag>ap_[a-z]+)(?P<attrs>(?:\s+[a-z_]+=\"[^\"]*\")*)\s*\]")
_SHORTCODE_ATTR = re.compile(r"([a-z_]+)=\"([^\"]*)\"")
_RESIZE_SUFFIX = re.compile(r"-(?:\d+x\d+)(\.[a-zA-Z]+)$")
_EXTENSION = re.compile(r"(\.[a-zA-Z]+)$")
_CONTROL_CHARS = re.compile(r"[\n\r\t\x00-\x08\x0b\x0c\x0e-\x1f]")
_IMG_ALT = re.compile(r"<img.*?alt\s*=\s*([\"'])(.*?)\1.*>", re.IGNORECASE | re.DOTALL)


# === Block Markup ===

@dataclass
class Block:
    """A parsed block of block-editor markup."""
    name: str
    attrs: dict[str, Any] = field(default_factory=dict)
    inner_html: str = ""
    inner_blocks: list["Block"] = field(default_factory=list)


def has_blocks(content: str) -> bool:
    return "<!-- wp:" in content


def _block_name(name: str) -> str:
    return name if "/" in name else f"core/{name}"


def parse_blocks(content: str) -> list[Block]:
    """Parse block delimiter comments into a block tree.

    Text outside any block is ignored. Unbalanced closers are skipped.
    """
    root: list[Block] = []
    stack: list[tuple[Block, int]] = []

    for match in _BLOCK_DELIMITER.finditer(content):
        name = _block_name(match.group("name"))

        if match.group("closer"):
            if not stack or stack[-1][0].name != name:
                continue
            block, start = stack.pop()
            block.inner_html = content[start:match.start()]
            (stack[-1][0].inner_blocks if stack else root).append(block)
            continue

        try:
            attrs = json.loads(match.group("attrs")) if match.group("attrs") else {}
        except ValueError:
            attrs = {}
        if not isinstance(attrs, dict):
            attrs = {}

        block = Block(name=name, attrs=attrs)
        if match.group("void"):
            (stack[-1][0].inner_blocks if stack else root).append(block)
        else:
            stack.append((block, match.end()))

    return root


def _render_block_markup(content: str) -> str:
    """Drop block delimiters, reply blocks and turn embeds into plain links."""

    content = re.sub(
        r"<!--\s+wp:activitypub/reply\s.*?(?:/-->|<!--\s+/wp:activitypub/reply\s+-->)",
        "",
        content,
        flags=re.DOTALL,
    )

    embed = re.compile(
        r"<!--\s+wp:(?:core/)?embed\s+(?P<attrs>\{.*?\})\s+-->.*?<!--\s+/wp:(?:core/)?embed\s+-->",
        re.DOTALL,
    )

    def embed_or_original(match: re.Match) -> str:
        try:
            attrs = json.loads(match.group("attrs"))
        except ValueError:
            return match.group(0)
        url = attrs.get("url") if isinstance(attrs, dict) else None
        if not url:
            return match.group(0)
        return f'<p><a href="{html.escape(url)}">{html.escape(url)}</a></p>'

    content = embed.sub(embed_or_original, content)
    return _BLOCK_DELIMITER.sub("", content)


# === Text Helpers ===

def strip_tags(value: str) -> str:
    """Return the text of an HTML fragment."""
    if not value:
        return ""
    return BeautifulSoup(value, "html.parser").get_text()


def autop(text: str) -> str:
    """Wrap double-newline separated text chunks in paragraphs."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    paragraphs = []
    for chunk in re.split(r"\n\s*\n", text):
        chunk = chunk.strip()
        if not chunk:
            continue
        if _BLOCK_START.match(chunk):
            paragraphs.append(chunk)
        else:
            paragraphs.append("<p>" + chunk.replace("\n", "<br />\n") + "</p>")
    return "\n".join(paragraphs)


def esc_hashtag(name: str) -> str:
    """Render a tag name as a hashtag (#WordsJoined)."""
    words = re.split(r"[\s\-]+", html.unescape(name).strip())
    joined = "".join(w[:1].upper() + w[1:] for w in words if w)
    return "#" + re.sub(r"[^\w]", "", joined)


def generate_summary(text: str, length: int) -> str:
    """Plain-text summary truncated at a word boundary."""
    text = re.sub(r"\s+", " ", html.unescape(strip_tags(text))).strip()
    if len(text) <= length:
        return text
    cut = text[:length].rsplit(" ", 1)[0].rstrip(".,;:!? ")
    return f"{cut} […]"


def locale_language(locale: str) -> str:
    """Language part of a locale ("de_DE" -> "de")."""
    return re.split(r"[_-]", locale, maxsplit=1)[0].lower() or "en"


# === Strategies ===

class ObjectTypeStrategy(ABC):
    """Chooses the ActivityStreams type of a content item."""

    @abstractmethod
    def object_class(self, item: ContentItem) -> type[ContentObject]:
        ...


class DefaultObjectTypeStrategy(ObjectTypeStrategy):
    """Note for short or untitled posts, otherwise Article or Page."""

    def __init__(self, setting: ObjectTypeSetting = ObjectTypeSetting.AUTO, note_length: int = 400):
        self.setting = setting
        self.note_length = note_length

    def object_class(self, item: ContentItem) -> type[ContentObject]:
        if self.setting == ObjectTypeSetting.NOTE:
            return Note

        text = strip_tags(item.content)
        if not item.supports_title or not item.title or len(text) <= self.note_length:
            return Note

        if item.post_type == "post":
            return Article if item.post_format in ("standard", "") else Note
        if item.post_type == "page":
            return Page
        return Article


class MentionExtractor(ABC):
    """Finds mentioned remote actors in content."""

    @abstractmethod
    def extract(self, text: str) -> dict[str, str]:
        """Return a mapping of ``@user@host`` handle to actor URL."""


class NoMentionExtractor(MentionExtractor):
    def extract(self, text: str) -> dict[str, str]:
        return {}


class HandleMentionExtractor(MentionExtractor):
    """Extracts ``@user@host`` handles and resolves them to actor URLs.

    Handles the resolver cannot map are left out.
    """

    HANDLE = re.compile(r"(?<![\w/@])@([\w.-]+)@([\w-]+(?:\.[\w-]+)+)")

    def __init__(self, resolve: Callable[[str], str | None]):
        self.resolve = resolve

    def extract(self, text: str) -> dict[str, str]:
        mentions = {}
        for user, host in self.HANDLE.findall(strip_tags(text)):
            handle = f"@{user}@{host}"
            if handle in mentions:
                continue
            url = self.resolve(handle)
            if url:
                mentions[handle] = url
        return mentions


class ContentTemplate:
    """Renders ``[ap_*]`` shortcode templates for a content item."""

    def __init__(self, transformer: "PostTransformer", item: ContentItem):
        self.transformer = transformer
        self.item = item

    def render(self, template: str) -> str:
        def replace(match: re.Match) -> str:
            attrs = dict(_SHORTCODE_ATTR.findall(match.group("attrs") or ""))
            handler = getattr(self, f"_{match.group('tag')}", None)
            if handler is None:
                return match.group(0)
            return handler(attrs.get("type", ""))

        return _SHORTCODE.sub(replace, template)

    def _ap_title(self, kind: str) -> str:
        title = html.escape(strip_tags(html.unescape(self.item.title)), quote=False)
        if not title:
            return ""
        return f"<h2>{title}</h2>" if kind == "html" else title

    def _ap_content(self, kind: str) -> str:
        content = _render_block_markup(self.item.content)
        if kind == "text":
            return html.escape(strip_tags(content), quote=False)
        return content

    def _ap_excerpt(self, kind: str) -> str:
        summary = self.transformer.summary_text(self.item)
        return f"<p>{html.escape(summary, quote=False)}</p>" if kind == "html" else summary

    def _ap_permalink(self, kind: str) -> str:
        url = html.escape(self.item.permalink)
        return f'<a href="{url}">{url}</a>' if kind == "html" else url

    def _ap_shortlink(self, kind: str) -> str:
        url = html.escape(self.item.shortlink or self.item.permalink)
        return f'<a href="{url}">{url}</a>' if kind == "html" else url

    def _ap_hashtags(self, kind: str) -> str:
        links = []
        for term in self.item.tags:
            links.append(
                f'<a rel="tag" class="hashtag u-tag u-category" href="{html.escape(term.url)}">'
                f"{html.escape(esc_hashtag(term.name))}</a>"
            )
        return " ".join(links)


# === Transformer ===

class PostTransformer:
    """Builds the federated object of a content item."""

    def __init__(
        self,
        config: FederationConfig,
        content: ContentProvider,
        registry: ActorRegistry,
        type_strategy: ObjectTypeStrategy | None = None,
        mention_extractor: MentionExtractor | None = None,
    ):
        self.config = config
        self.settings = config.content
        self.content = content
        self.registry = registry
        self.type_strategy = type_strategy or DefaultObjectTypeStrategy(
            self.settings.object_type, self.settings.note_length
        )
        self.mention_extractor = mention_extractor or NoMentionExtractor()

    # === Identity ===

    def object_id(self, item: ContentItem) -> str:
        return f"{self.content.home_url}/?p={item.id}"

    def acting_user_id(self, item: ContentItem) -> int:
        return self.registry.acting_user_id(item.author_id)

    # === Entry Point ===

    def transform(self, item: ContentItem) -> ContentObject:
        """Build the Note, Article or Page representing a content item."""
        cls = self.type_strategy.object_class(item)
        is_note = cls is Note
        user_id = self.acting_user_id(item)
        language = locale_language(item.locale or self.settings.locale)
        mentions = self.mentions(item)

        content_html = self.render_content(item, is_note)

        name = None
        summary = None
        if not is_note:
            name = strip_tags(html.unescape(item.title)) or None
            summary = DRAFT_PLACEHOLDER if item.is_draft else (self.summary_text(item) or None)

        to, cc = self.addressing(item, user_id, mentions)

        obj = cls(
            id=self.object_id(item),
            attributed_to=self.registry.actor_url(user_id),
            content=content_html,
            published=format_timestamp(item.published),
            updated=self.updated(item),
            url=item.permalink,
            name=name,
            summary=summary,
            content_map={language: content_html},
            name_map={language: name} if name else None,
            summary_map={language: summary} if summary else None,
            to=to,
            cc=cc,
            audience=self.audience(),
            in_reply_to=self.in_reply_to(item),
            tag=self.tags(item, mentions),
            attachment=self.attachments(item),
            image=self.featured_image(item),
        )

        if item.content_warning:
            obj.sensitive = True
            obj.summary = item.content_warning
            obj.summary_map = None

        return obj

    # === Content ===

    def content_template(self, is_note: bool) -> str:
        if self.settings.object_type == ObjectTypeSetting.NOTE:
            return self.settings.custom_post_content
        if is_note:
            return '[ap_title type="html"]\n\n[ap_content]'
        return "[ap_content]"

    def render_content(self, item: ContentItem, is_note: bool) -> str:
        if item.is_draft:
            return DRAFT_PLACEHOLDER

        rendered = ContentTemplate(self, item).render(self.content_template(is_note))
        rendered = _CONTROL_CHARS.sub("", autop(rendered)).strip()

        if len(rendered) > self.settings.max_content_length:
            logger.info("Content too long, using summary", item_id=item.id, length=len(rendered))
            url = html.escape(item.permalink)
            summary = html.escape(self.summary_text(item), quote=False)
            rendered = f'<p>{summary}</p><p><a href="{url}">{url}</a></p>'

        return rendered

    def summary_text(self, item: ContentItem) -> str:
        source = item.excerpt or _render_block_markup(item.content)
        return generate_summary(source, self.settings.excerpt_length)

    def updated(self, item: ContentItem) -> str | None:
        if item.modified is None:
            return None
        published = format_timestamp(item.published)
        modified = format_timestamp(item.modified)
        return modified if modified > published else None

    def in_reply_to(self, item: ContentItem) -> str | None:
        if has_blocks(item.content):
            for block in parse_blocks(item.content):
                if block.name == "activitypub/reply" and block.attrs.get("url"):
                    return block.attrs["url"]
        return item.in_reply_to

    # === Addressing ===

    def mentions(self, item: ContentItem) -> dict[str, str]:
        return self.mention_extractor.extract(f"{item.content} {item.excerpt}")

    def addressing(
        self,
        item: ContentItem,
        user_id: int,
        mentions: dict[str, str],
    ) -> tuple[list[str], list[str]]:
        """Return (to, cc) for the item's visibility."""
        visibility = item.visibility or self.settings.default_visibility
        if visibility == ContentVisibility.LOCAL:
            return [], []

        audience = [self.registry.followers_url(user_id)]
        for url in mentions.values():
            if url not in audience:
                audience.append(url)

        if visibility == ContentVisibility.QUIET_PUBLIC:
            return audience, [AS_PUBLIC]
        return [AS_PUBLIC], audience

    def audience(self) -> str | None:
        if self.config.actor_mode != ActorMode.ACTOR_BLOG:
            return None
        return self.registry.actor_url(BLOG_USER_ID)

    def tags(self, item: ContentItem, mentions: dict[str, str]) -> list[JsonDict]:
        tags: list[JsonDict] = []
        for term in item.tags:
            tags.append({
                "type": "Hashtag",
                "href": term.url,
                "name": esc_hashtag(term.name),
            })
        for handle, url in mentions.items():
            tags.append({
                "type": "Mention",
                "href": url,
                "name": handle,
            })
        return tags

    # === Media ===

    def featured_image(self, item: ContentItem) -> JsonDict | None:
        if item.thumbnail_id is None:
            return None
        media = self.content.get_media(item.thumbnail_id)
        if media is None or media.kind != "image":
            return None
        return self._media_to_attachment(media, "")

    def attachments(self, item: ContentItem) -> list[JsonDict]:
        """Collect, filter, de-duplicate and convert the item's media."""
        max_media = self.settings.max_attachments
        if item.is_draft or max_media <= 0:
            return []

        media: dict[str, list[dict[str, Any]]] = {kind: [] for kind in MEDIA_KINDS}

        if item.thumbnail_id is not None:
            media["image"].append({"id": item.thumbnail_id})

        self._collect_enclosures(item, media)

        if has_blocks(item.content):
            self._collect_block_media(parse_blocks(item.content), media)
        elif len(media["image"]) <= max_media:
            media["image"].extend(self._classic_editor_images(item.content, max_media))

        selected = self._filter_by_type(media, self.settings.preferred_media_type or item.post_format)

        unique = []
        seen_ids = set()
        for entry in selected:
            media_id = entry.get("id")
            if media_id is not None:
                if media_id in seen_ids:
                    continue
                seen_ids.add(media_id)
            unique.append(entry)

        attachments = []
        for entry in unique[:max_media]:
            attachment = self._entry_to_attachment(entry)
            if attachment:
                attachments.append(attachment)
        return attachments

    def _collect_enclosures(self, item: ContentItem, media: dict[str, list[dict[str, Any]]]) -> None:
        for enclosure in item.enclosures:
            entry = dict(enclosure)
            media_id = self.content.find_media_id_by_url(entry.get("url", ""))
            if media_id is not None:
                known = self.content.get_media(media_id)
                entry.update(id=media_id, url=known.url, mediaType=known.mime_type)

            kind = entry.get("mediaType", "").split("/", 1)[0]
            if kind in media:
                media[kind].append(entry)

    def _collect_block_media(self, blocks: list[Block], media: dict[str, list[dict[str, Any]]]) -> None:
        for block in blocks:
            if block.inner_blocks:
                self._collect_block_media(block.inner_blocks, media)

            attrs = block.attrs
            if block.name in ("core/image", "core/cover"):
                if attrs.get("id"):
                    match = _IMG_ALT.search(block.inner_html)
                    media["image"].append({"id": attrs["id"], "alt": match.group(2) if match else ""})
            elif block.name == "core/audio":
                if attrs.get("id"):
                    media["audio"].append({"id": attrs["id"]})
            elif block.name in ("core/video", "videopress/video"):
                if attrs.get("id"):
                    media["video"].append({"id": attrs["id"]})
            elif block.name in ("jetpack/slideshow", "jetpack/tiled-gallery"):
                media["image"].extend({"id": media_id} for media_id in attrs.get("ids") or [])
            elif block.name == "jetpack/image-compare":
                for key in ("beforeImageId", "afterImageId"):
                    if attrs.get(key):
                        media["image"].append({"id": attrs[key]})

    def _classic_editor_images(self, content: str, max_images: int) -> list[dict[str, Any]]:
        """Map inline ``<img>`` tags pointing at uploads to media entries."""
        images: list[dict[str, Any]] = []
        base = self.content.upload_base_url

        soup = BeautifulSoup(content, "html.parser")
        for img in soup.find_all("img"):
            if len(images) >= max_images:
                break
            src = img.get("src")
            if not src or not src.startswith(base):
                continue

            media_id = self.content.find_media_id_by_url(src)
            if media_id is None:
                src, count = _RESIZE_SUFFIX.subn(r"\1", src, count=1)
                if count:
                    media_id = self.content.find_media_id_by_url(src)
            if media_id is None:
                media_id = self.content.find_media_id_by_url(_EXTENSION.sub(r"-scaled\1", src))

            if media_id is not None:
                images.append({"id": media_id, "alt": img.get("alt", "")})

        return images

    @staticmethod
    def _filter_by_type(media: dict[str, list[dict[str, Any]]], kind: str) -> list[dict[str, Any]]:
        kind = (kind or "").lower()
        if media.get(kind):
            return media[kind]
        return [entry for kind in MEDIA_KINDS for entry in media[kind]]

    def _entry_to_attachment(self, entry: dict[str, Any]) -> JsonDict | None:
        if "id" not in entry:
            media_type = entry.get("mediaType", "")
            if not entry.get("url"):
                return None
            return {
                "type": "Image" if media_type.startswith("image/") else "Document",
                "url": entry["url"],
                "mediaType": media_type,
            }

        media = self.content.get_media(entry["id"])
        if media is None:
            return None
        return self._media_to_attachment(media, entry.get("alt", ""))

    @staticmethod
    def _media_to_attachment(media: MediaItem, alt: str) -> JsonDict | None:
        if media.kind == "image":
            image: JsonDict = {
                "type": "Image",
                "url": media.large_url or media.url,
                "mediaType": media.mime_type,
            }
            name = strip_tags(html.unescape(alt or media.alt))
            if name:
                image["name"] = name
            return image

        if media.kind in ("audio", "video"):
            document: JsonDict = {
                "type": "Document",
                "mediaType": media.mime_type,
                "url": media.url,
                "name": media.title,
            }
            if media.width and media.height:
                document["width"] = media.width
                document["height"] = media.height
            return document

        return None
