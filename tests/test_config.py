"""Tests for fedipress configuration."""

import pytest
from pydantic import ValidationError

from fedipress.config import (
    DEFAULT_POST_CONTENT,
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


class TestActorMode:
    """Tests for ActorMode enum."""

    def test_actor_modes(self):
        """Test all actor modes exist."""
        assert ActorMode.ACTOR.value == "actor"
        assert ActorMode.BLOG.value == "blog"
        assert ActorMode.ACTOR_BLOG.value == "actor_blog"

    def test_visibilities(self):
        """Test all visibilities exist."""
        assert ContentVisibility.PUBLIC.value == "public"
        assert ContentVisibility.QUIET_PUBLIC.value == "quiet_public"
        assert ContentVisibility.LOCAL.value == "local"


class TestServerConfig:
    """Tests for ServerConfig."""

    def test_defaults(self):
        """Test default values."""
        config = ServerConfig()
        assert config.domain == "blog.example"
        assert config.host == "0.0.0.0"
        assert config.port == 8080
        assert config.base_url == "https://blog.example"

    def test_base_url_stripped(self):
        """Test base_url trailing slash is stripped."""
        config = ServerConfig(base_url="https://example.com/")
        assert config.base_url == "https://example.com"

    def test_invalid_port(self):
        """Test port range is enforced."""
        with pytest.raises(ValidationError):
            ServerConfig(port=0)


class TestContentConfig:
    """Tests for ContentConfig."""

    def test_defaults(self):
        """Test default transformation settings."""
        config = ContentConfig()
        assert config.object_type == ObjectTypeSetting.AUTO
        assert config.custom_post_content == DEFAULT_POST_CONTENT
        assert config.max_attachments == 3
        assert config.default_visibility == ContentVisibility.PUBLIC

    def test_negative_attachments_rejected(self):
        """Test max_attachments cannot be negative."""
        with pytest.raises(ValidationError):
            ContentConfig(max_attachments=-1)


class TestDeliveryConfig:
    """Tests for DeliveryConfig."""

    def test_defaults(self):
        """Test default delivery settings."""
        config = DeliveryConfig()
        assert config.max_attempts == 3
        assert config.follower_error_threshold == 5
        assert config.use_shared_inbox is True
        assert config.timeout_seconds > 0


class TestSecurityConfig:
    """Tests for SecurityConfig."""

    def test_defaults(self):
        """Test default security settings."""
        config = SecurityConfig()
        assert config.defer_signature_verification is False
        assert config.signature_max_skew_seconds == 12 * 60 * 60


class TestDatabaseConfig:
    """Tests for DatabaseConfig."""

    def test_defaults(self):
        """Test default database settings."""
        config = DatabaseConfig()
        assert "sqlite+aiosqlite" in config.url


class TestFederationConfig:
    """Tests for full FederationConfig."""

    def test_defaults(self):
        """Test default configuration loads."""
        config = FederationConfig()
        assert config.actor_mode == ActorMode.ACTOR_BLOG
        assert config.blog_username == "blog"
        assert config.migration_lock_timeout_seconds == 1800
        assert config.single_user_mode is False

    def test_single_user_mode(self):
        """Test blog mode is single-user mode."""
        config = FederationConfig(actor_mode="blog")
        assert config.single_user_mode is True

    def test_frozen(self):
        """Test configuration cannot be changed after loading."""
        config = FederationConfig()
        with pytest.raises(ValidationError):
            config.actor_mode = ActorMode.BLOG
        with pytest.raises(ValidationError):
            config.content.max_attachments = 10

    def test_numeric_blog_username_rejected(self):
        """Test the blog username must not collide with user ids."""
        with pytest.raises(ValidationError):
            FederationConfig(blog_username="42")

    def test_from_yaml(self, tmp_path):
        """Test loading config from YAML file."""
        yaml_content = """
server:
  domain: test.example.com
  port: 9000
actor_mode: actor
disabled_users: [3, 4]
content:
  object_type: note
  max_attachments: 0
delivery:
  follower_error_threshold: 2
"""
        config_file = tmp_path / "config.yaml"
        config_file.write_text(yaml_content)

        config = FederationConfig.from_yaml(str(config_file))
        assert config.server.domain == "test.example.com"
        assert config.server.port == 9000
        assert config.actor_mode == ActorMode.ACTOR
        assert config.disabled_users == [3, 4]
        assert config.content.object_type == ObjectTypeSetting.NOTE
        assert config.content.max_attachments == 0
        assert config.delivery.follower_error_threshold == 2

    def test_from_yaml_missing_file(self):
        """Test loading from non-existent file raises error."""
        with pytest.raises(FileNotFoundError):
            FederationConfig.from_yaml("/nonexistent/config.yaml")


class TestLoadConfig:
    """Tests for load_config function."""

    def test_load_default(self):
        """Test loading default configuration."""
        config = load_config()
        assert isinstance(config, FederationConfig)
