from datetime import datetime
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from pydantic import BaseModel, ConfigDict
from typing import List, Optional

from update_server import auth, catalog
from update_server.database import get_db, get_session_factory
from update_server.fetcher import AssetFetcher, get_fetcher
from update_server.github import GitHubClient, get_github_client
from update_server.ingestion import ReleaseIngestor, sync_all_plugins
from update_server.errors import NotFound
from update_server.models import Plugin
from update_server.ratelimit import rate_limit
from update_server.settings import Settings, get_settings


class PluginDetail(BaseModel):
    id: int
    slug: str
    name: str
    github_owner: str
    github_repo: str
    active: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class PluginCreate(BaseModel):
    slug: str
    name: str
    github_owner: str
    github_repo: str
    description: Optional[str] = None
    author: Optional[str] = None
    homepage: Optional[str] = None
    requires_wp: Optional[str] = None
    tested_wp: Optional[str] = None
    requires_php: Optional[str] = None


class PluginUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    author: Optional[str] = None
    homepage: Optional[str] = None
    requires_wp: Optional[str] = None
    tested_wp: Optional[str] = None
    requires_php: Optional[str] = None


class PluginVersionDetail(BaseModel):
    id: int
    version: str
    download_url: Optional[str] = None
    file_path: Optional[str] = None
    file_size: int
    github_tag: Optional[str] = None
    github_release_id: Optional[int] = None
    is_prerelease: bool
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ApiKeyCreate(BaseModel):
    site_url: str
    plugin_id: Optional[int] = None


admin_router = APIRouter(
    prefix="/api/admin",
    tags=["admin"],
    dependencies=[Depends(rate_limit("admin")), Depends(auth.require_admin)],
)


@admin_router.post("/plugins", status_code=status.HTTP_201_CREATED)
def admin_create_plugin(
    payload: PluginCreate,
    db: Session = Depends(get_db),
):
    """Register a plugin and the GitHub repository its releases come from."""
    plugin = catalog.create_plugin(db, payload.model_dump())
    return catalog.plugin_to_dict(plugin)


@admin_router.get("/plugins", response_model=List[PluginDetail])
def admin_list_plugins(
    db: Session = Depends(get_db),
):
    """List all plugins, including deactivated ones."""
    return db.query(Plugin).order_by(Plugin.id.asc()).all()


@admin_router.put("/plugins/{slug}")
def admin_update_plugin(
    slug: str,
    payload: PluginUpdate,
    db: Session = Depends(get_db),
):
    plugin = catalog.update_plugin(db, slug, payload.model_dump(exclude_unset=True))
    return catalog.plugin_to_dict(plugin)


@admin_router.delete("/plugins/{slug}")
def admin_deactivate_plugin(
    slug: str,
    db: Session = Depends(get_db),
):
    """Soft-delete a plugin. Its versions and download history are kept."""
    catalog.deactivate_plugin(db, slug)
    return {"message": "Plugin deactivated", "slug": slug}


@admin_router.get("/plugins/{plugin_id}/versions", response_model=List[PluginVersionDetail])
def admin_list_plugin_versions(plugin_id: int, db: Session = Depends(get_db)):
    """Versions of a plugin, newest first. Deactivated plugins are included."""
    if catalog.get_plugin(db, plugin_id, active_only=False) is None:
        raise NotFound("Plugin not found")
    return catalog.list_versions(db, plugin_id)


@admin_router.post("/sync/{plugin_id}")
def admin_sync_plugin(
    plugin_id: int,
    db: Session = Depends(get_db),
    fetcher: AssetFetcher = Depends(get_fetcher),
    github: GitHubClient = Depends(get_github_client),
):
    """Pull the plugin's releases from GitHub and register the missing ones."""
    ingestor = ReleaseIngestor(db, fetcher=fetcher, github=github)
    return ingestor.sync_plugin(plugin_id).to_dict()


@admin_router.post("/sync-all")
def admin_sync_all(
    session_factory=Depends(get_session_factory),
    fetcher: AssetFetcher = Depends(get_fetcher),
    github: GitHubClient = Depends(get_github_client),
    settings: Settings = Depends(get_settings),
):
    results = sync_all_plugins(session_factory, fetcher, github, max_workers=settings.sync_workers)
    return {"message": "Sync completed", "results": results}


@admin_router.get("/github/rate-limit")
def admin_github_rate_limit(github: GitHubClient = Depends(get_github_client)):
    return github.rate_limit()


@admin_router.get("/github/{owner}/{repo}")
def admin_github_repository(
    owner: str,
    repo: str,
    github: GitHubClient = Depends(get_github_client),
):
    return github.get_repository(owner, repo)


@admin_router.post("/api-keys", status_code=status.HTTP_201_CREATED)
def admin_create_api_key(
    payload: ApiKeyCreate,
    db: Session = Depends(get_db),
):
    """Issue an API key for a site. The key is only ever returned here and on regeneration."""
    site = auth.create_site(db, payload.site_url, payload.plugin_id)
    return auth.site_to_dict(site, include_key=True)


@admin_router.get("/api-keys")
def admin_list_api_keys(db: Session = Depends(get_db)):
    return [auth.site_to_dict(site) for site in auth.list_sites(db)]


@admin_router.delete("/api-keys/{site_id}")
def admin_revoke_api_key(site_id: int, db: Session = Depends(get_db)):
    site = auth.revoke_site(db, site_id)
    return {"message": "API key revoked", "site_url": site.site_url}


@admin_router.post("/api-keys/{site_id}/regenerate")
def admin_regenerate_api_key(site_id: int, db: Session = Depends(get_db)):
    site = auth.regenerate_site_key(db, site_id)
    return auth.site_to_dict(site, include_key=True)


@admin_router.get("/auth-stats")
def admin_auth_stats(db: Session = Depends(get_db)):
    return auth.site_key_stats(db)
