"""
Release catalog: plugins, their immutable release versions and download facts.

Version registration is idempotent. The unique constraints on
(plugin, version) and (plugin, release id) are the only synchronization
point; a violation raised by the database means another delivery got there
first and is reported as ``ALREADY_EXISTS``.
"""

import logging

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from functools import cmp_to_key
from typing import List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from update_server.errors import Conflict, NotFound, ValidationError
from update_server.models import Download, Plugin, PluginVersion, utcnow
from update_server.versioning import compare, is_valid_version

logger = logging.getLogger(__name__)

UPDATABLE_PLUGIN_FIELDS = (
    "name",
    "description",
    "author",
    "homepage",
    "requires_wp",
    "tested_wp",
    "requires_php",
)


class RegistrationResult(str, Enum):
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"


@dataclass
class VersionRecord:
    version: str
    download_url: Optional[str] = None
    file_path: Optional[str] = None
    file_size: int = 0
    changelog: Optional[str] = None
    release_notes: Optional[str] = None
    github_tag: Optional[str] = None
    github_release_id: Optional[int] = None
    is_prerelease: bool = False


def find_active_plugin(
    db: Session,
    slug: Optional[str] = None,
    owner: Optional[str] = None,
    repo: Optional[str] = None,
) -> Optional[Plugin]:
    """Look up an active plugin by slug, or by its GitHub (owner, repo) pair."""
    q = db.query(Plugin).filter(Plugin.active.is_(True))

    if slug is not None:
        q = q.filter(Plugin.slug == slug)
    elif owner is not None and repo is not None:
        q = q.filter(Plugin.github_owner == owner, Plugin.github_repo == repo)
    else:
        raise ValueError("either slug or owner/repo is required")

    return q.first()


def get_plugin(db: Session, plugin_id: int, active_only: bool = True) -> Optional[Plugin]:
    q = db.query(Plugin).filter(Plugin.id == plugin_id)
    if active_only:
        q = q.filter(Plugin.active.is_(True))
    return q.first()


def list_active_plugins(db: Session) -> List[Plugin]:
    return db.query(Plugin).filter(Plugin.active.is_(True)).order_by(Plugin.name.asc()).all()


def _find_existing_version(
    db: Session, plugin_id: int, record: VersionRecord
) -> Optional[PluginVersion]:
    conditions = [PluginVersion.version == record.version]
    if record.github_release_id is not None:
        conditions.append(PluginVersion.github_release_id == record.github_release_id)

    return (
        db.query(PluginVersion)
        .filter(PluginVersion.plugin_id == plugin_id, or_(*conditions))
        .first()
    )


def version_exists(db: Session, plugin_id: int, record: VersionRecord) -> bool:
    return _find_existing_version(db, plugin_id, record) is not None


def register_version(
    db: Session, plugin_id: int, record: VersionRecord
) -> Tuple[RegistrationResult, PluginVersion]:
    """
    Insert a release version exactly once.

    Commits on success. Nothing else may be pending on the session, since a
    lost insert race rolls the session back.
    """
    existing = _find_existing_version(db, plugin_id, record)
    if existing is not None:
        return RegistrationResult.ALREADY_EXISTS, existing

    version = PluginVersion(
        plugin_id=plugin_id,
        version=record.version,
        download_url=record.download_url,
        file_path=record.file_path,
        file_size=record.file_size or 0,
        changelog=record.changelog,
        release_notes=record.release_notes,
        github_tag=record.github_tag,
        github_release_id=record.github_release_id,
        is_prerelease=bool(record.is_prerelease),
        created_at=utcnow(),
    )
    db.add(version)

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = _find_existing_version(db, plugin_id, record)
        if existing is None:
            # Not a duplicate, e.g. the plugin row is gone
            raise
        logger.info(
            "Version %s of plugin %s was registered concurrently", record.version, plugin_id
        )
        return RegistrationResult.ALREADY_EXISTS, existing

    db.refresh(version)
    return RegistrationResult.CREATED, version


def latest_stable_version(db: Session, plugin_id: int) -> Optional[PluginVersion]:
    """The greatest non-prerelease version of a plugin, by version precedence."""
    candidates = (
        db.query(PluginVersion)
        .filter(
            PluginVersion.plugin_id == plugin_id,
            PluginVersion.is_prerelease.is_(False),
        )
        .all()
    )

    comparable = []
    for candidate in candidates:
        if is_valid_version(candidate.version):
            comparable.append(candidate)
        else:
            logger.warning(
                "Skipping unparseable version %r of plugin %s", candidate.version, plugin_id
            )

    if not comparable:
        return None
    return max(comparable, key=_by_version)


_by_version = cmp_to_key(lambda a, b: compare(a.version, b.version))


def get_version(db: Session, plugin_id: int, version: str) -> Optional[PluginVersion]:
    return (
        db.query(PluginVersion)
        .filter(PluginVersion.plugin_id == plugin_id, PluginVersion.version == version)
        .first()
    )


def list_versions(db: Session, plugin_id: int) -> List[PluginVersion]:
    """All versions of a plugin, newest first."""
    versions = db.query(PluginVersion).filter(PluginVersion.plugin_id == plugin_id).all()

    comparable = [v for v in versions if is_valid_version(v.version)]
    others = [v for v in versions if not is_valid_version(v.version)]
    return sorted(comparable, key=_by_version, reverse=True) + others


def create_plugin(db: Session, data: dict) -> Plugin:
    for field in ("slug", "name", "github_owner", "github_repo"):
        if not data.get(field):
            raise ValidationError("slug, name, github_owner and github_repo are required")

    clash = (
        db.query(Plugin)
        .filter(
            Plugin.active.is_(True),
            or_(
                Plugin.slug == data["slug"],
                (Plugin.github_owner == data["github_owner"])
                & (Plugin.github_repo == data["github_repo"]),
            ),
        )
        .first()
    )
    if clash is not None:
        raise Conflict("A plugin with this slug or repository already exists")

    now = utcnow()
    plugin = Plugin(
        slug=data["slug"],
        name=data["name"],
        description=data.get("description"),
        author=data.get("author"),
        homepage=data.get("homepage"),
        github_owner=data["github_owner"],
        github_repo=data["github_repo"],
        requires_wp=data.get("requires_wp"),
        tested_wp=data.get("tested_wp"),
        requires_php=data.get("requires_php"),
        active=True,
        created_at=now,
        updated_at=now,
    )
    db.add(plugin)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise Conflict("A plugin with this slug or repository already exists")

    db.refresh(plugin)
    logger.info("Registered plugin %s (%s/%s)", plugin.slug, plugin.github_owner, plugin.github_repo)
    return plugin


def update_plugin(db: Session, slug: str, updates: dict) -> Plugin:
    plugin = find_active_plugin(db, slug=slug)
    if plugin is None:
        raise NotFound("Plugin not found")

    changes = {k: v for k, v in updates.items() if k in UPDATABLE_PLUGIN_FIELDS}
    if not changes:
        raise ValidationError("No valid fields to update")

    for field, value in changes.items():
        setattr(plugin, field, value)
    plugin.updated_at = utcnow()
    db.commit()
    db.refresh(plugin)
    return plugin


def deactivate_plugin(db: Session, slug: str) -> Plugin:
    plugin = find_active_plugin(db, slug=slug)
    if plugin is None:
        raise NotFound("Plugin not found")

    plugin.active = False
    plugin.updated_at = utcnow()
    db.commit()
    logger.info("Deactivated plugin %s", slug)
    return plugin


def touch_plugin(db: Session, plugin_id: int) -> None:
    db.query(Plugin).filter(Plugin.id == plugin_id).update(
        {"updated_at": utcnow()}, synchronize_session=False
    )
    db.commit()


def record_download(
    db: Session,
    plugin_id: int,
    version_id: int,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    wp_version: Optional[str] = None,
    php_version: Optional[str] = None,
    site_url: Optional[str] = None,
) -> Download:
    download = Download(
        plugin_id=plugin_id,
        version_id=version_id,
        ip_address=ip_address,
        user_agent=user_agent,
        wp_version=wp_version,
        php_version=php_version,
        site_url=site_url,
        downloaded_at=utcnow(),
    )
    db.add(download)
    db.commit()
    return download


def download_counts(db: Session, plugin_id: int) -> dict:
    """Map of version id to number of downloads."""
    rows = (
        db.query(Download.version_id, func.count(Download.id))
        .filter(Download.plugin_id == plugin_id)
        .group_by(Download.version_id)
        .all()
    )
    return {version_id: count for version_id, count in rows}


def plugin_stats(db: Session, plugin_id: int) -> dict:
    downloads = db.query(Download.downloaded_at).filter(Download.plugin_id == plugin_id).all()
    since = utcnow().replace(tzinfo=None) - timedelta(days=30)

    days = set()
    last_30_days = 0
    for (downloaded_at,) in downloads:
        days.add(downloaded_at.date())
        if _naive(downloaded_at) >= since:
            last_30_days += 1

    return {
        "total_downloads": len(downloads),
        "active_days": len(days),
        "downloads_last_30_days": last_30_days,
    }


def _naive(dt: datetime) -> datetime:
    return dt.replace(tzinfo=None) if dt.tzinfo else dt


def isoformat(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.isoformat() + "Z"
    return dt.isoformat().replace("+00:00", "Z")


def version_to_dict(version: PluginVersion, download_count: Optional[int] = None) -> dict:
    data = {
        "version": version.version,
        "created_at": isoformat(version.created_at),
        "changelog": version.changelog,
        "is_prerelease": version.is_prerelease,
        "file_size": version.file_size,
        "github_tag": version.github_tag,
    }
    if download_count is not None:
        data["download_count"] = download_count
    return data


def plugin_to_dict(plugin: Plugin) -> dict:
    return {
        "id": plugin.id,
        "slug": plugin.slug,
        "name": plugin.name,
        "description": plugin.description,
        "author": plugin.author,
        "homepage": plugin.homepage,
        "github_owner": plugin.github_owner,
        "github_repo": plugin.github_repo,
        "requires_wp": plugin.requires_wp,
        "tested_wp": plugin.tested_wp,
        "requires_php": plugin.requires_php,
        "active": plugin.active,
        "created_at": isoformat(plugin.created_at),
        "updated_at": isoformat(plugin.updated_at),
    }
