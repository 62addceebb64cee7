"""
Update resolution for the WordPress update-check protocol.

The payload shape returned for an available update is consumed verbatim by
the client-side updater, so field names and defaults must not change.
"""

import logging

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Union

from sqlalchemy.orm import Session

from update_server import catalog
from update_server.auth import ensure_site_scope
from update_server.errors import UpdateServerError
from update_server.models import AuthorizedSite, Plugin, PluginVersion
from update_server.versioning import is_newer, parse_version

logger = logging.getLogger(__name__)

DEFAULT_REQUIRES = "5.0"
DEFAULT_TESTED = "6.3"
DEFAULT_REQUIRES_PHP = "7.4"
DEFAULT_CHANGELOG = "See the GitHub release notes for details"
UP_TO_DATE_MESSAGE = "Plugin is up to date"


@dataclass(frozen=True)
class UpToDate:
    slug: str
    version: str

    def to_dict(self) -> dict:
        return {
            "slug": self.slug,
            "version": self.version,
            "up_to_date": True,
            "message": UP_TO_DATE_MESSAGE,
        }


@dataclass(frozen=True)
class UpdateAvailable:
    payload: Dict[str, Any]

    def to_dict(self) -> dict:
        return dict(self.payload)


@dataclass(frozen=True)
class NotAvailable:
    slug: str
    reason: str = "Plugin not found"

    def to_dict(self) -> dict:
        return {"error": self.reason}


CheckResult = Union[UpToDate, UpdateAvailable, NotAvailable]


def build_update_payload(plugin: Plugin, latest: PluginVersion, server_url: str) -> Dict[str, Any]:
    slug = plugin.slug
    version = latest.version
    return {
        "slug": slug,
        "plugin": f"{slug}/{slug}.php",
        "new_version": version,
        "url": plugin.homepage or f"{server_url}/plugins/{slug}",
        "package": f"{server_url}/api/updates/download/{slug}/{version}",
        "icons": {
            "1x": f"{server_url}/icons/{slug}-128x128.png",
            "2x": f"{server_url}/icons/{slug}-256x256.png",
        },
        "banners": {
            "low": f"{server_url}/banners/{slug}-772x250.png",
            "high": f"{server_url}/banners/{slug}-1544x500.png",
        },
        "requires": plugin.requires_wp or DEFAULT_REQUIRES,
        "tested": plugin.tested_wp or DEFAULT_TESTED,
        "requires_php": plugin.requires_php or DEFAULT_REQUIRES_PHP,
        "sections": {
            "description": plugin.description or "",
            "changelog": latest.changelog or DEFAULT_CHANGELOG,
        },
        "upgrade_notice": f"New version {version} available",
    }


def check_update(db: Session, slug: str, client_version: str, server_url: str) -> CheckResult:
    """
    Decide whether ``client_version`` of ``slug`` has a newer stable release.

    Raises ``InvalidVersionFormat`` when the client version cannot be parsed.
    """
    parse_version(client_version)

    plugin = catalog.find_active_plugin(db, slug=slug)
    if plugin is None:
        return NotAvailable(slug)

    latest = catalog.latest_stable_version(db, plugin.id)
    if latest is None:
        return NotAvailable(slug, reason="No stable release available")

    if not is_newer(latest.version, client_version):
        return UpToDate(slug=slug, version=client_version)

    logger.info("Update available for %s: %s -> %s", slug, client_version, latest.version)
    return UpdateAvailable(build_update_payload(plugin, latest, server_url))


def check_many(
    db: Session,
    items: Iterable[Dict[str, Any]],
    server_url: str,
    site: Optional[AuthorizedSite] = None,
) -> Dict[str, dict]:
    """Resolve each ``{slug, version}`` independently; failures become inline errors."""
    results: Dict[str, dict] = {}

    for item in items:
        slug: Optional[str] = item.get("slug") if isinstance(item, dict) else None
        version: Optional[str] = item.get("version") if isinstance(item, dict) else None

        if not slug or not version:
            results[slug or "unknown"] = {"error": "slug and version are required"}
            continue

        try:
            if site is not None and site.plugin_id is not None:
                plugin = catalog.find_active_plugin(db, slug=slug)
                if plugin is not None:
                    ensure_site_scope(site, plugin)
            results[slug] = check_update(db, slug, version, server_url).to_dict()
        except UpdateServerError as e:
            results[slug] = {"error": e.message}
        except Exception:
            logger.exception("Update check failed for %s", slug)
            results[slug] = {"error": "Error checking for updates"}

    return results
