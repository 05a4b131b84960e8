"""Tests for content item transformation."""

from datetime import datetime, timedelta, timezone

import pytest

from fedipress.activitypub_types import AS_PUBLIC, Article, Note, Page
from fedipress.actors import ActorRegistry
from fedipress.config import ActorMode, ContentVisibility
from fedipress.content import ContentItem, MediaItem, Term
from fedipress.transformer import (
    DRAFT_PLACEHOLDER,
    DefaultObjectTypeStrategy,
    HandleMentionExtractor,
    PostTransformer,
    autop,
    esc_hashtag,
    generate_summary,
    parse_blocks,
)

LONG_TEXT = "word " * 100
PUBLISHED = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
UPLOADS = "https://blog.example/uploads/2024/05"


@pytest.fixture
def transformer(config, content, registry):
    return PostTransformer(config, content, registry)


@pytest.fixture
def make_transformer(make_config, content):
    """Factory for transformers with non-default settings."""

    def make(mention_extractor=None, **overrides):
        config = make_config(**overrides)
        return PostTransformer(
            config,
            content,
            ActorRegistry(config, content),
            mention_extractor=mention_extractor,
        )

    return make


@pytest.fixture
def add_item(content):
    """Add a content item by user 1 with sensible defaults."""

    def add(**fields):
        fields.setdefault("id", 10)
        fields.setdefault("author_id", 1)
        fields.setdefault("published", PUBLISHED)
        return content.add_item(ContentItem(**fields))

    return add


@pytest.fixture
def media(content):
    """Media library with images, an audio file and a scaled upload."""
    content.add_media(MediaItem(id=1, url=f"{UPLOADS}/cover.jpg", mime_type="image/jpeg", alt="Cover"))
    content.add_media(MediaItem(id=2, url=f"{UPLOADS}/photo.jpg", mime_type="image/jpeg"))
    content.add_media(MediaItem(id=3, url=f"{UPLOADS}/big-scaled.jpg", mime_type="image/jpeg"))
    content.add_media(MediaItem(
        id=4, url=f"{UPLOADS}/song.mp3", mime_type="audio/mpeg", title="Song",
    ))
    content.add_media(MediaItem(
        id=5, url=f"{UPLOADS}/large.png", mime_type="image/png", large_url=f"{UPLOADS}/large-1024x768.png",
    ))
    return content.media


class TestObjectType:
    """Tests for object type selection."""

    def test_short_post_is_note(self, add_item):
        item = add_item(title="Hello", content="<p>Short</p>")
        assert DefaultObjectTypeStrategy().object_class(item) is Note

    def test_long_post_is_article(self, add_item):
        item = add_item(title="Hello", content=f"<p>{LONG_TEXT}</p>")
        assert DefaultObjectTypeStrategy().object_class(item) is Article

    def test_untitled_post_is_note(self, add_item):
        item = add_item(title="", content=f"<p>{LONG_TEXT}</p>")
        assert DefaultObjectTypeStrategy().object_class(item) is Note

    def test_long_page_is_page(self, add_item):
        item = add_item(title="About", content=f"<p>{LONG_TEXT}</p>", post_type="page")
        assert DefaultObjectTypeStrategy().object_class(item) is Page

    def test_status_format_is_note(self, add_item):
        item = add_item(title="Hello", content=f"<p>{LONG_TEXT}</p>", post_format="status")
        assert DefaultObjectTypeStrategy().object_class(item) is Note

    def test_note_setting(self, add_item):
        item = add_item(title="Hello", content=f"<p>{LONG_TEXT}</p>")
        assert DefaultObjectTypeStrategy(setting="note").object_class(item) is Note


class TestTransform:
    """Tests for the transformed object."""

    def test_note(self, transformer, add_item):
        """Test a short post becomes a public Note with its title as heading."""
        item = add_item(title="Hello", content="<p>Short text</p>")
        obj = transformer.transform(item)
        data = obj.to_dict()

        assert isinstance(obj, Note)
        assert data["id"] == "https://blog.example/?p=10"
        assert data["attributedTo"] == "https://blog.example/actors/1"
        assert data["content"] == "<h2>Hello</h2><p>Short text</p>"
        assert data["contentMap"] == {"en": data["content"]}
        assert data["published"] == "2024-05-01T12:00:00Z"
        assert data["to"] == [AS_PUBLIC]
        assert data["cc"] == ["https://blog.example/actors/1/followers"]
        assert data["audience"] == "https://blog.example/actors/0"
        assert "name" not in data

    def test_article(self, transformer, add_item):
        """Test a long post becomes an Article with name and summary."""
        item = add_item(title="Long &amp; read", content=f"<p>{LONG_TEXT}</p>")
        data = transformer.transform(item).to_dict()

        assert data["type"] == "Article"
        assert data["name"] == "Long & read"
        assert data["nameMap"] == {"en": "Long & read"}
        assert data["summary"].endswith("[…]")
        assert data["content"] == f"<p>{LONG_TEXT}</p>"

    def test_plain_text_gets_paragraphs(self, transformer, add_item):
        """Test classic text is wrapped in paragraphs without control characters."""
        item = add_item(title="", content="First line\nsecond line\n\nSecond\tparagraph")
        data = transformer.transform(item).to_dict()

        assert data["content"] == "<p>First line<br />second line</p><p>Secondparagraph</p>"

    def test_custom_template(self, make_transformer, add_item):
        """Test the fixed Note setting renders the configured template."""
        transformer = make_transformer(content={"object_type": "note"})
        item = add_item(
            title="Tagged",
            content="<p>Body</p>",
            tags=[Term(name="open source", url="https://blog.example/tag/open-source")],
        )
        data = transformer.transform(item).to_dict()

        assert data["content"].startswith("<h2>Tagged</h2>")
        assert "<p>Body</p>" in data["content"]
        assert '<a rel="tag" class="hashtag u-tag u-category" href="https://blog.example/tag/open-source">#OpenSource</a>' in data["content"]

    def test_template_shortcodes(self, make_transformer, add_item):
        """Test excerpt and permalink shortcodes."""
        transformer = make_transformer(content={
            "object_type": "note",
            "custom_post_content": '[ap_excerpt]\n\n[ap_permalink type="html"]',
        })
        item = add_item(title="T", content="<p>Body</p>", excerpt="An excerpt")
        data = transformer.transform(item).to_dict()

        assert data["content"] == (
            '<p>An excerpt</p><p><a href="https://blog.example/?p=10">https://blog.example/?p=10</a></p>'
        )

    def test_draft(self, transformer, add_item, media):
        """Test drafts carry a placeholder and no media."""
        item = add_item(title="WIP", content=f"<p>{LONG_TEXT}</p>", status="draft", thumbnail_id=1)
        data = transformer.transform(item).to_dict()

        assert data["content"] == DRAFT_PLACEHOLDER
        assert data["summary"] == DRAFT_PLACEHOLDER
        assert "attachment" not in data

    def test_blog_mode(self, make_transformer, add_item):
        """Test blog-only mode attributes everything to the blog actor."""
        transformer = make_transformer(actor_mode=ActorMode.BLOG)
        data = transformer.transform(add_item(content="<p>x</p>")).to_dict()

        assert data["attributedTo"] == "https://blog.example/actors/0"
        assert data["cc"] == ["https://blog.example/actors/0/followers"]
        assert "audience" not in data

    def test_unknown_author_published_by_blog(self, transformer, add_item):
        """Test items of removed authors are published by the blog actor."""
        data = transformer.transform(add_item(author_id=77, content="<p>x</p>")).to_dict()
        assert data["attributedTo"] == "https://blog.example/actors/0"

    def test_locale(self, transformer, add_item):
        """Test contentMap uses the item locale."""
        data = transformer.transform(add_item(content="<p>Hallo</p>", locale="de_DE")).to_dict()
        assert list(data["contentMap"]) == ["de"]

    def test_content_warning(self, transformer, add_item):
        """Test a content warning marks the object sensitive."""
        item = add_item(title="Hello", content=f"<p>{LONG_TEXT}</p>", content_warning="Spoilers")
        data = transformer.transform(item).to_dict()

        assert data["sensitive"] is True
        assert data["summary"] == "Spoilers"
        assert "summaryMap" not in data

    def test_updated(self, transformer, add_item):
        """Test updated is only set for later modifications."""
        unchanged = add_item(id=11, content="<p>x</p>", modified=PUBLISHED)
        edited = add_item(id=12, content="<p>x</p>", modified=PUBLISHED + timedelta(hours=1))

        assert transformer.transform(unchanged).updated is None
        assert transformer.transform(edited).updated == "2024-05-01T13:00:00Z"

    def test_too_long_content(self, make_transformer, add_item):
        """Test oversized content is replaced by a summary and permalink."""
        transformer = make_transformer(content={"max_content_length": 100, "excerpt_length": 20})
        data = transformer.transform(add_item(title="", content=f"<p>{LONG_TEXT}</p>")).to_dict()

        assert data["content"].startswith("<p>word word word")
        assert data["content"].endswith('<a href="https://blog.example/?p=10">https://blog.example/?p=10</a></p>')


class TestVisibility:
    """Tests for addressing by visibility."""

    def test_quiet_public(self, transformer, add_item):
        data = transformer.transform(
            add_item(content="<p>x</p>", visibility=ContentVisibility.QUIET_PUBLIC)
        ).to_dict()

        assert data["to"] == ["https://blog.example/actors/1/followers"]
        assert data["cc"] == [AS_PUBLIC]

    def test_local(self, transformer, add_item):
        data = transformer.transform(add_item(content="<p>x</p>", visibility=ContentVisibility.LOCAL)).to_dict()

        assert data["to"] == []
        assert data["cc"] == []

    def test_default_visibility(self, make_transformer, add_item):
        transformer = make_transformer(content={"default_visibility": "quiet_public"})
        data = transformer.transform(add_item(content="<p>x</p>")).to_dict()

        assert data["cc"] == [AS_PUBLIC]


class TestTags:
    """Tests for hashtags and mentions."""

    def test_hashtags(self, transformer, add_item):
        item = add_item(content="<p>x</p>", tags=[Term(name="Python", url="https://blog.example/tag/python")])
        data = transformer.transform(item).to_dict()

        assert data["tag"] == [{"type": "Hashtag", "href": "https://blog.example/tag/python", "name": "#Python"}]

    def test_mentions(self, make_transformer, add_item):
        """Test resolved mentions are tagged and addressed."""
        alice = "https://remote.example/users/alice"
        extractor = HandleMentionExtractor({"@alice@remote.example": alice}.get)
        transformer = make_transformer(mention_extractor=extractor)

        item = add_item(content="<p>Hi @alice@remote.example and @ghost@nowhere.example</p>")
        data = transformer.transform(item).to_dict()

        assert data["tag"] == [{"type": "Mention", "href": alice, "name": "@alice@remote.example"}]
        assert data["cc"] == ["https://blog.example/actors/1/followers", alice]

    def test_email_is_not_a_mention(self):
        extractor = HandleMentionExtractor(lambda handle: "https://x.example/u")
        assert extractor.extract("mail me: bob@x.example") == {}


class TestReplies:
    """Tests for reply blocks and embeds."""

    def test_reply_block(self, transformer, add_item):
        """Test a reply block sets inReplyTo and is not rendered."""
        item = add_item(content=(
            '<!-- wp:activitypub/reply {"url":"https://remote.example/notes/1"} /-->\n'
            "<!-- wp:paragraph -->\n<p>I agree</p>\n<!-- /wp:paragraph -->"
        ))
        data = transformer.transform(item).to_dict()

        assert data["inReplyTo"] == "https://remote.example/notes/1"
        assert "activitypub" not in data["content"]
        assert "<p>I agree</p>" in data["content"]

    def test_embed_becomes_link(self, transformer, add_item):
        item = add_item(content=(
            '<!-- wp:embed {"url":"https://video.example/watch/1"} -->\n'
            '<figure><div>https://video.example/watch/1</div></figure>\n'
            "<!-- /wp:embed -->"
        ))
        data = transformer.transform(item).to_dict()

        assert data["content"] == '<p><a href="https://video.example/watch/1">https://video.example/watch/1</a></p>'


class TestAttachments:
    """Tests for media attachments."""

    def test_featured_image(self, transformer, add_item, media):
        """Test the featured image is the object image and first attachment."""
        data = transformer.transform(add_item(content="<p>x</p>", thumbnail_id=1)).to_dict()

        assert data["image"] == {"type": "Image", "url": f"{UPLOADS}/cover.jpg", "mediaType": "image/jpeg", "name": "Cover"}
        assert data["attachment"][0]["url"] == f"{UPLOADS}/cover.jpg"

    def test_block_images_deduplicated(self, transformer, add_item, media):
        """Test block media is collected once, with alt text from the markup."""
        item = add_item(thumbnail_id=2, content=(
            '<!-- wp:image {"id":2} -->\n<figure><img src="x" alt="Photo"/></figure>\n<!-- /wp:image -->\n'
            '<!-- wp:group -->\n<div>\n'
            '<!-- wp:image {"id":5} -->\n<figure><img src="y" alt="Big &amp; bold"/></figure>\n<!-- /wp:image -->\n'
            "</div>\n<!-- /wp:group -->"
        ))
        attachments = transformer.transform(item).attachment

        assert [a["url"] for a in attachments] == [f"{UPLOADS}/photo.jpg", f"{UPLOADS}/large-1024x768.png"]
        assert attachments[1]["name"] == "Big & bold"

    def test_classic_images(self, transformer, add_item, media):
        """Test resized and scaled uploads map back to library entries."""
        item = add_item(content=(
            f'<p><img src="{UPLOADS}/photo-300x200.jpg" alt="A photo"></p>'
            f'<p><img src="{UPLOADS}/big.jpg"></p>'
            '<p><img src="https://elsewhere.example/img.jpg"></p>'
        ))
        attachments = transformer.transform(item).attachment

        assert [a["url"] for a in attachments] == [f"{UPLOADS}/photo.jpg", f"{UPLOADS}/big-scaled.jpg"]
        assert attachments[0]["name"] == "A photo"

    def test_max_attachments(self, make_transformer, add_item, media):
        """Test attachments are capped and can be disabled."""
        content = "".join(f'<!-- wp:image {{"id":{n}}} /-->' for n in (1, 2, 3, 5))
        capped = make_transformer(content={"max_attachments": 2})
        disabled = make_transformer(content={"max_attachments": 0})

        assert len(capped.transform(add_item(content=content)).attachment) == 2
        assert disabled.transform(add_item(content=content)).attachment == []

    def test_audio_format_prefers_audio(self, transformer, add_item, media):
        """Test the post format selects the matching media type."""
        item = add_item(
            post_format="audio",
            thumbnail_id=1,
            content='<!-- wp:audio {"id":4} /-->',
        )
        attachments = transformer.transform(item).attachment

        assert attachments == [{
            "type": "Document",
            "mediaType": "audio/mpeg",
            "url": f"{UPLOADS}/song.mp3",
            "name": "Song",
        }]

    def test_enclosures(self, transformer, add_item, media):
        """Test enclosures are attached, known files via the media library."""
        item = add_item(content="<p>x</p>", enclosures=[
            {"url": f"{UPLOADS}/song.mp3", "mediaType": "audio/mpeg"},
            {"url": "https://cdn.example/clip.mp4", "mediaType": "video/mp4"},
        ])
        attachments = transformer.transform(item).attachment

        assert attachments[0]["name"] == "Song"
        assert attachments[1] == {"type": "Document", "url": "https://cdn.example/clip.mp4", "mediaType": "video/mp4"}


class TestHelpers:
    """Tests for text and block helpers."""

    def test_parse_nested_blocks(self):
        blocks = parse_blocks(
            '<!-- wp:columns --><div><!-- wp:jetpack/slideshow {"ids":[1,2]} /--></div><!-- /wp:columns -->'
        )

        assert blocks[0].name == "core/columns"
        assert blocks[0].inner_blocks[0].name == "jetpack/slideshow"
        assert blocks[0].inner_blocks[0].attrs == {"ids": [1, 2]}

    def test_generate_summary(self):
        assert generate_summary("<p>Short</p>", 10) == "Short"
        assert generate_summary("<p>one two three four</p>", 10) == "one two […]"

    def test_esc_hashtag(self):
        assert esc_hashtag("open source") == "#OpenSource"
        assert esc_hashtag("c++ tips") == "#CTips"

    def test_autop_keeps_blocks(self):
        assert autop("<h2>Title</h2>\n\ntext") == "<h2>Title</h2>\n<p>text</p>"
