from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Column,
    Integer,
    String,
    Boolean,
    DateTime,
    Text,
    ForeignKey,
    Index,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship

from update_server.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Plugin(Base):
    __tablename__ = "plugins"

    id = Column(Integer, primary_key=True, index=True)
    slug = Column(String(100), nullable=False, index=True)

    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    author = Column(String, nullable=True)
    homepage = Column(String, nullable=True)

    # Join key for inbound release webhooks
    github_owner = Column(String, nullable=False)
    github_repo = Column(String, nullable=False)

    requires_wp = Column(String(20), nullable=True)
    tested_wp = Column(String(20), nullable=True)
    requires_php = Column(String(20), nullable=True)

    active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    versions = relationship(
        "PluginVersion",
        back_populates="plugin",
        order_by="PluginVersion.id",
    )

    __table_args__ = (
        # Soft-deleted rows keep their slug and repo, so uniqueness only
        # holds among active plugins.
        Index(
            "uq_plugins_active_slug",
            "slug",
            unique=True,
            sqlite_where=text("active = 1"),
            postgresql_where=text("active"),
        ),
        Index(
            "uq_plugins_active_repo",
            "github_owner",
            "github_repo",
            unique=True,
            sqlite_where=text("active = 1"),
            postgresql_where=text("active"),
        ),
    )


class PluginVersion(Base):
    """One published release. Rows are only ever inserted."""

    __tablename__ = "plugin_versions"

    id = Column(Integer, primary_key=True, index=True)
    plugin_id = Column(Integer, ForeignKey("plugins.id"), nullable=False)

    version = Column(String(50), nullable=False)  # normalized, e.g. "2.0.0"
    download_url = Column(String, nullable=True)  # remote URL of the archive
    file_path = Column(String, nullable=True)  # name under UPLOAD_DIR, if fetched
    file_size = Column(BigInteger, nullable=False, default=0)

    changelog = Column(Text, nullable=True)
    release_notes = Column(Text, nullable=True)
    github_tag = Column(String(100), nullable=True)  # raw tag, e.g. "v2.0.0"
    github_release_id = Column(BigInteger, nullable=True)
    is_prerelease = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, nullable=False, default=utcnow)

    plugin = relationship("Plugin", back_populates="versions")

    __table_args__ = (
        UniqueConstraint("plugin_id", "version", name="uq_plugin_versions_version"),
        UniqueConstraint("plugin_id", "github_release_id", name="uq_plugin_versions_release"),
    )


class AuthorizedSite(Base):
    __tablename__ = "authorized_sites"

    id = Column(Integer, primary_key=True, index=True)
    # NULL grants access to every plugin
    plugin_id = Column(Integer, ForeignKey("plugins.id"), nullable=True)

    site_url = Column(String, nullable=False)
    api_key = Column(String(64), nullable=False, unique=True)
    active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    last_check = Column(DateTime, nullable=True)

    plugin = relationship("Plugin")

    __table_args__ = (
        UniqueConstraint("site_url", "plugin_id", name="uq_authorized_sites_site_plugin"),
    )


class Download(Base):
    __tablename__ = "downloads"

    id = Column(Integer, primary_key=True, index=True)
    plugin_id = Column(Integer, ForeignKey("plugins.id"), nullable=False, index=True)
    version_id = Column(Integer, ForeignKey("plugin_versions.id"), nullable=False, index=True)

    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String, nullable=True)
    wp_version = Column(String(20), nullable=True)
    php_version = Column(String(20), nullable=True)
    site_url = Column(String, nullable=True)

    downloaded_at = Column(DateTime, nullable=False, default=utcnow)
