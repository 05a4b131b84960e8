"""Tests for ActivityPub protocol types."""

import json
from datetime import datetime, timezone

import pytest

from fedipress.activitypub_types import (
    AS_PUBLIC,
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
    actor_id_of,
    extract_instance_domain,
    format_timestamp,
    is_activity_public,
    object_id_of,
    parse_actor,
    parse_object,
)


class TestPublicKey:
    """Tests for PublicKey dataclass."""

    def test_to_dict(self):
        """Test public key serialization."""
        pk = PublicKey(
            id="https://blog.example/actors/1#main-key",
            owner="https://blog.example/actors/1",
            public_key_pem="-----BEGIN PUBLIC KEY-----\nMIIBIjAN...\n-----END PUBLIC KEY-----",
        )
        result = pk.to_dict()

        assert result["id"] == "https://blog.example/actors/1#main-key"
        assert result["owner"] == "https://blog.example/actors/1"
        assert "publicKeyPem" in result


class TestActor:
    """Tests for Actor dataclass."""

    def test_basic_actor_to_dict(self):
        """Test basic actor serialization."""
        actor = Actor(
            id="https://blog.example/actors/1",
            type=ObjectType.PERSON,
            preferred_username="admin",
            name="Admin",
            inbox="https://blog.example/actors/1/inbox",
            outbox="https://blog.example/actors/1/outbox",
            followers="https://blog.example/actors/1/followers",
            following="https://blog.example/actors/1/following",
            shared_inbox="https://blog.example/inbox",
        )
        result = actor.to_dict()

        assert "@context" in result
        assert result["id"] == "https://blog.example/actors/1"
        assert result["type"] == "Person"
        assert result["preferredUsername"] == "admin"
        assert result["endpoints"] == {"sharedInbox": "https://blog.example/inbox"}

    def test_profile_fields_become_property_values(self):
        """Test profile fields are rendered as PropertyValue attachments."""
        actor = Actor(
            id="https://blog.example/actors/1",
            preferred_username="admin",
            fields=[("Website", "https://admin.example")],
        )
        result = actor.to_dict()

        assert result["attachment"] == [
            {"type": "PropertyValue", "name": "Website", "value": "https://admin.example"},
        ]

    def test_actor_requires_id(self):
        """Test actor without id is rejected."""
        with pytest.raises(ValueError):
            Actor(id="")

    def test_actor_rejects_object_type(self):
        """Test a non-actor type is rejected."""
        with pytest.raises(ValueError):
            Actor(id="https://blog.example/actors/1", type=ObjectType.NOTE)


class TestContentObjects:
    """Tests for Note, Article and Page."""

    def test_note_to_dict(self):
        """Test basic note serialization."""
        note = Note(
            id="https://blog.example/?p=1",
            attributed_to="https://blog.example/actors/1",
            content="<p>Hello Fediverse!</p>",
            published="2024-01-01T00:00:00Z",
            to=[AS_PUBLIC],
            cc=["https://blog.example/actors/1/followers"],
        )
        result = note.to_dict()

        assert "@context" not in result
        assert result["type"] == "Note"
        assert result["content"] == "<p>Hello Fediverse!</p>"
        assert result["to"] == [AS_PUBLIC]
        assert result["url"] == "https://blog.example/?p=1"
        assert "name" not in result

    def test_with_context(self):
        """Test the JSON-LD context is added on request."""
        page = Page(id="https://blog.example/?p=2", attributed_to="https://blog.example/actors/0")
        assert "@context" in page.to_dict(with_context=True)

    def test_variants_fix_type(self):
        """Test each variant carries its own type."""
        kwargs = {"id": "https://blog.example/?p=1", "attributed_to": "https://blog.example/actors/1"}

        assert Note(**kwargs).type == ObjectType.NOTE
        assert Article(**kwargs).type == ObjectType.ARTICLE
        assert Page(**kwargs).type == ObjectType.PAGE

    def test_base_class_cannot_be_instantiated(self):
        """Test the untyped base class is rejected."""
        with pytest.raises(TypeError):
            ContentObject(id="https://blog.example/?p=1", attributed_to="https://blog.example/actors/1")

    def test_attributed_to_required(self):
        """Test objects need an author."""
        with pytest.raises(ValueError):
            Note(id="https://blog.example/?p=1", attributed_to="")

    def test_json_round_trip(self):
        """Test object -> JSON -> parse keeps identity fields."""
        article = Article(
            id="https://blog.example/?p=7",
            attributed_to="https://blog.example/actors/1",
            content="<p>Long read</p>",
            name="A title",
            published="2024-03-04T05:06:07Z",
        )

        parsed = parse_object(json.loads(json.dumps(article.to_dict())))

        assert isinstance(parsed, Article)
        assert parsed.id == article.id
        assert parsed.type == article.type
        assert parsed.content == article.content
        assert parsed.attributed_to == article.attributed_to
        assert parsed.published == article.published

    def test_parse_unsupported_type(self):
        """Test unsupported object types are not parsed."""
        assert parse_object({"id": "https://x.example/1", "type": "Question"}) is None


class TestActivity:
    """Tests for Activity dataclass."""

    def test_create_activity_to_dict(self):
        """Test Create activity serialization."""
        note = Note(
            id="https://blog.example/?p=1",
            attributed_to="https://blog.example/actors/1",
            content="Test",
        )
        activity = Activity(
            id="https://blog.example/actors/1/activities/create-1",
            type=ActivityType.CREATE,
            actor="https://blog.example/actors/1",
            object=note.to_dict(),
            to=[AS_PUBLIC],
        )
        result = activity.to_dict()

        assert "@context" in result
        assert result["type"] == "Create"
        assert result["object"]["type"] == "Note"
        assert activity.object_id == "https://blog.example/?p=1"

    def test_type_is_coerced(self):
        """Test string activity types are converted."""
        activity = Activity(
            id="https://blog.example/a/1",
            type="Announce",
            actor="https://blog.example/actors/0",
            object="https://blog.example/?p=1",
        )
        assert activity.type == ActivityType.ANNOUNCE
        assert activity.object_id == "https://blog.example/?p=1"

    def test_object_required(self):
        """Test activities need an object."""
        with pytest.raises(ValueError):
            Activity(id="x", type=ActivityType.LIKE, actor="https://a.example/u", object="")


class TestOrderedCollectionPage:
    """Tests for collections."""

    def test_collection_to_dict(self):
        """Test collection serialization."""
        collection = OrderedCollection(
            id="https://blog.example/actors/1/followers",
            total_items=3,
            first="https://blog.example/actors/1/followers?page=1",
        )
        result = collection.to_dict()

        assert result["type"] == "OrderedCollection"
        assert result["totalItems"] == 3

    def test_collection_page_to_dict(self):
        """Test collection page serialization."""
        page = OrderedCollectionPage(
            id="https://blog.example/actors/1/followers?page=2",
            part_of="https://blog.example/actors/1/followers",
            items=["https://remote.example/users/alice"],
            total_items=21,
            prev="https://blog.example/actors/1/followers?page=1",
        )
        result = page.to_dict()

        assert result["type"] == "OrderedCollectionPage"
        assert result["partOf"] == "https://blog.example/actors/1/followers"
        assert result["orderedItems"] == ["https://remote.example/users/alice"]
        assert "next" not in result
        assert result["prev"].endswith("page=1")


class TestIsActivityPublic:
    """Tests for public addressing detection."""

    FOLLOWERS = ["https://example.org/@test", "https://example.com/@test2"]

    @pytest.mark.parametrize("data,expected", [
        ({"cc": FOLLOWERS, "to": AS_PUBLIC, "object": {}}, True),
        ({"cc": FOLLOWERS, "to": [AS_PUBLIC], "object": {}}, True),
        ({"cc": FOLLOWERS, "object": {}}, False),
        ({"cc": FOLLOWERS, "object": {"to": AS_PUBLIC}}, True),
        ({"cc": FOLLOWERS, "object": {"to": [AS_PUBLIC]}}, True),
        ({"cc": [AS_PUBLIC], "object": "https://example.org/1"}, True),
        ({"to": FOLLOWERS, "object": "https://example.org/1"}, False),
    ])
    def test_is_activity_public(self, data, expected):
        """Test public addressing in to/cc of the activity or its object."""
        assert is_activity_public(data) is expected


class TestHelperFunctions:
    """Tests for parsing helpers."""

    def test_parse_actor(self):
        """Test parsing actor from JSON."""
        data = {
            "id": "https://mastodon.social/users/alice",
            "type": "Person",
            "preferredUsername": "alice",
            "inbox": "https://mastodon.social/users/alice/inbox",
            "endpoints": {"sharedInbox": "https://mastodon.social/inbox"},
            "publicKey": {
                "id": "https://mastodon.social/users/alice#main-key",
                "owner": "https://mastodon.social/users/alice",
                "publicKeyPem": "-----BEGIN PUBLIC KEY-----\ntest\n-----END PUBLIC KEY-----",
            },
        }
        actor = parse_actor(data)

        assert actor is not None
        assert actor.preferred_username == "alice"
        assert actor.shared_inbox == "https://mastodon.social/inbox"
        assert actor.public_key.id.endswith("#main-key")
        assert actor.url == "https://mastodon.social/users/alice"

    def test_parse_actor_invalid(self):
        """Test parsing invalid actor data."""
        assert parse_actor({}) is None

    def test_object_and_actor_ids(self):
        """Test id extraction from strings and embedded objects."""
        assert object_id_of({"id": "https://x.example/1"}) == "https://x.example/1"
        assert object_id_of("https://x.example/2") == "https://x.example/2"
        assert object_id_of(["https://x.example/3"]) == ""
        assert actor_id_of({"id": "https://x.example/u", "type": "Person"}) == "https://x.example/u"

    def test_format_timestamp(self):
        """Test UTC timestamp format."""
        value = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        assert format_timestamp(value) == "2024-01-02T03:04:05Z"
        assert format_timestamp(value.replace(tzinfo=None)) == "2024-01-02T03:04:05Z"

    def test_extract_instance_domain(self):
        """Test extracting instance domain from actor ID."""
        assert extract_instance_domain("https://mastodon.social/users/alice") == "mastodon.social"

    def test_validation_error_carries_param(self):
        """Test validation errors name the parameter."""
        error = ActivityValidationError("Missing parameter(s): object", "object", "missing_param")
        assert error.param == "object"
        assert error.code == "missing_param"
