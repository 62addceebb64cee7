"""
Release ingestion from GitHub webhooks and reconciliation syncs.

Each delivery goes through the same steps:

1. the HMAC signature over the raw body is checked (when a secret is set);
2. only ``release`` events with action ``published`` continue;
3. the plugin is resolved from the repository owner/name;
4. the tag is normalized and checked against the catalog;
5. a ``.zip`` asset is fetched locally when present (best effort);
6. the version is registered and the plugin's ``updated_at`` refreshed.

A replayed or racing delivery ends as ``duplicate``; nothing here needs
a lock because the catalog insert is idempotent.
"""

import hashlib
import hmac
import json
import logging
import re

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from update_server import catalog
from update_server.catalog import RegistrationResult, VersionRecord
from update_server.errors import NotFound, Unauthorized, UpdateServerError, ValidationError
from update_server.fetcher import AssetFetcher
from update_server.github import GitHubClient
from update_server.models import Plugin
from update_server.versioning import canonical_version, is_valid_version

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="
CHANGELOG_MAX_LENGTH = 1000

_CHANGELOG_RE = re.compile(r"\b(?:changelog|changes?|what'?s new)[\s:]*(.+)", re.IGNORECASE | re.DOTALL)


class IngestionOutcome(str, Enum):
    PROCESSED = "processed"
    IGNORED = "ignored"
    UNREGISTERED = "unregistered"
    DUPLICATE = "duplicate"


@dataclass
class IngestionResult:
    outcome: IngestionOutcome
    message: str
    plugin: Optional[str] = None
    version: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"status": self.outcome.value, "message": self.message}
        if self.plugin is not None:
            data["plugin"] = self.plugin
        if self.version is not None:
            data["version"] = self.version
        return data


@dataclass
class SyncResult:
    plugin_slug: str
    total_releases: int = 0
    synced_versions: int = 0
    errors: List[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "plugin_slug": self.plugin_slug,
            "synced_versions": self.synced_versions,
            "total_releases": self.total_releases,
            "errors": self.errors,
        }


def sign_payload(body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return SIGNATURE_PREFIX + digest


def verify_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> None:
    """
    Raise ``Unauthorized`` unless ``signature`` matches ``body``.

    Without a configured secret every delivery is accepted.
    """
    if not secret:
        logger.warning("GITHUB_WEBHOOK_SECRET not configured, skipping signature verification")
        return

    if not signature:
        logger.warning("Webhook delivery without signature rejected")
        raise Unauthorized()

    expected = sign_payload(body, secret)
    if not hmac.compare_digest(signature.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("Webhook delivery with invalid signature rejected")
        raise Unauthorized()


def extract_changelog(body: Optional[str]) -> str:
    """Best-effort changelog section of a release body, else its first 1000 characters."""
    if not body:
        return ""

    match = _CHANGELOG_RE.search(body)
    if match and match.group(1).strip():
        return match.group(1).strip()

    return body[:CHANGELOG_MAX_LENGTH]


def find_zip_asset(assets: List[dict]) -> Optional[dict]:
    for asset in assets or []:
        name = asset.get("name") or ""
        if name.endswith(".zip") or asset.get("content_type") == "application/zip":
            return asset
    return None


def build_test_release(repository: str, tag_name: str, body: Optional[str] = None,
                       prerelease: bool = False, release_id: Optional[int] = None) -> dict:
    """Synthetic ``release`` webhook payload for manual testing."""
    if not repository or "/" not in repository or not tag_name:
        raise ValidationError("repository (owner/name) and tag_name are required")

    owner, name = repository.split("/", 1)
    return {
        "action": "published",
        "release": {
            "id": release_id,
            "tag_name": tag_name,
            "name": tag_name,
            "body": body or "Test release triggered manually",
            "prerelease": prerelease,
            "assets": [],
            "zipball_url": f"https://github.com/{repository}/archive/refs/tags/{tag_name}.zip",
        },
        "repository": {"name": name, "owner": {"login": owner}},
    }


class ReleaseIngestor:
    def __init__(
        self,
        db: Session,
        fetcher: Optional[AssetFetcher] = None,
        github: Optional[GitHubClient] = None,
        webhook_secret: Optional[str] = None,
    ):
        self.db = db
        self.fetcher = fetcher
        self.github = github
        self.webhook_secret = webhook_secret

    def handle_delivery(self, body: bytes, signature: Optional[str], event: Optional[str]) -> IngestionResult:
        verify_signature(body, signature, self.webhook_secret)

        try:
            payload = json.loads(body)
        except (ValueError, UnicodeDecodeError) as e:
            raise ValidationError("Invalid JSON payload") from e
        if not isinstance(payload, dict):
            raise ValidationError("Invalid JSON payload")

        return self.handle_event(event, payload)

    def handle_event(self, event: Optional[str], payload: Dict[str, Any]) -> IngestionResult:
        logger.info("Webhook received: %s", event)

        if event != "release":
            logger.info("Event %s ignored, only release events are processed", event)
            return IngestionResult(IngestionOutcome.IGNORED, f"Event {event} ignored")

        action = payload.get("action")
        if action != "published":
            logger.info("Release action %s ignored, only published releases are processed", action)
            return IngestionResult(IngestionOutcome.IGNORED, f"Action {action} ignored")

        release = payload.get("release")
        repository = payload.get("repository")
        if not isinstance(release, dict) or not isinstance(repository, dict):
            raise ValidationError("release and repository are required")

        owner = (repository.get("owner") or {}).get("login")
        repo = repository.get("name")
        if not owner or not repo:
            raise ValidationError("repository name and owner are required")

        plugin = catalog.find_active_plugin(self.db, owner=owner, repo=repo)
        if plugin is None:
            logger.info("Repository %s/%s is not registered", owner, repo)
            return IngestionResult(
                IngestionOutcome.UNREGISTERED,
                f"Repository {owner}/{repo} is not registered",
            )

        return self.ingest_release(plugin, release)

    def ingest_release(self, plugin: Plugin, release: Dict[str, Any]) -> IngestionResult:
        tag_name = release.get("tag_name")
        if not tag_name:
            raise ValidationError("release.tag_name is required")

        if not is_valid_version(tag_name):
            logger.warning("Tag %r of %s is not a comparable version, ignored", tag_name, plugin.slug)
            return IngestionResult(
                IngestionOutcome.IGNORED,
                f"Tag {tag_name} is not a valid version",
                plugin=plugin.slug,
            )

        version = canonical_version(tag_name)
        record = VersionRecord(
            version=version,
            changelog=extract_changelog(release.get("body")),
            release_notes=release.get("body"),
            github_tag=tag_name,
            github_release_id=release.get("id"),
            is_prerelease=bool(release.get("prerelease")),
        )

        if catalog.version_exists(self.db, plugin.id, record):
            logger.info("Version %s already exists for %s", version, plugin.slug)
            return self._duplicate(plugin, version)

        self._resolve_asset(plugin, release, record)

        result, _ = catalog.register_version(self.db, plugin.id, record)
        if result is RegistrationResult.ALREADY_EXISTS:
            return self._duplicate(plugin, version)

        catalog.touch_plugin(self.db, plugin.id)
        logger.info(
            "Release %s of %s (%s/%s) processed",
            version, plugin.slug, plugin.github_owner, plugin.github_repo,
        )
        return IngestionResult(
            IngestionOutcome.PROCESSED,
            "Release processed successfully",
            plugin=plugin.slug,
            version=version,
        )

    def _duplicate(self, plugin: Plugin, version: str) -> IngestionResult:
        return IngestionResult(
            IngestionOutcome.DUPLICATE,
            f"Version {version} already exists",
            plugin=plugin.slug,
            version=version,
        )

    def _resolve_asset(self, plugin: Plugin, release: Dict[str, Any], record: VersionRecord) -> None:
        asset = find_zip_asset(release.get("assets"))
        if asset is None:
            # GitHub's generated source archive
            record.download_url = release.get("zipball_url")
            record.file_size = 0
            return

        record.download_url = asset.get("browser_download_url")
        record.file_size = asset.get("size") or 0

        if self.fetcher is None or not record.download_url:
            return
        try:
            record.file_path = self.fetcher.fetch(record.download_url, plugin.slug, record.version)
        except UpdateServerError as e:
            logger.error("Failed to download asset for %s %s: %s", plugin.slug, record.version, e)
        except OSError as e:
            logger.error("Failed to store asset for %s %s: %s", plugin.slug, record.version, e)

    def sync_plugin(self, plugin_id: int) -> SyncResult:
        """Re-apply the pipeline to every release GitHub lists for the plugin."""
        plugin = catalog.get_plugin(self.db, plugin_id)
        if plugin is None:
            raise NotFound("Plugin not found")
        if self.github is None:
            raise ValueError("sync requires a GitHub client")

        logger.info("Syncing releases of %s/%s", plugin.github_owner, plugin.github_repo)
        releases = self.github.list_releases(plugin.github_owner, plugin.github_repo, per_page=50)

        result = SyncResult(plugin_slug=plugin.slug, total_releases=len(releases))
        for release in releases:
            if release.get("draft"):
                continue
            try:
                outcome = self.ingest_release(plugin, release)
            except UpdateServerError as e:
                logger.error("Failed to sync release %s of %s: %s", release.get("tag_name"), plugin.slug, e)
                result.errors.append({"release": release.get("tag_name"), "error": e.message})
                continue
            if outcome.outcome is IngestionOutcome.PROCESSED:
                result.synced_versions += 1

        catalog.touch_plugin(self.db, plugin.id)
        logger.info(
            "Synced %d of %d releases for %s", result.synced_versions, result.total_releases, plugin.slug
        )
        return result


def sync_all_plugins(
    session_factory,
    fetcher: Optional[AssetFetcher],
    github: GitHubClient,
    max_workers: int = 4,
) -> List[dict]:
    """Sync every active plugin, in parallel across plugins and serially within one."""
    db = session_factory()
    try:
        targets = [(p.id, p.slug) for p in catalog.list_active_plugins(db)]
    finally:
        db.close()

    def run(target):
        plugin_id, slug = target
        session = session_factory()
        try:
            ingestor = ReleaseIngestor(session, fetcher=fetcher, github=github)
            return ingestor.sync_plugin(plugin_id).to_dict()
        except UpdateServerError as e:
            logger.error("Failed to sync plugin %s: %s", slug, e)
            return {"plugin_slug": slug, "error": e.message}
        finally:
            session.close()

    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
        return list(pool.map(run, targets))
