import logging
import os

from datetime import datetime, timezone
from fastapi import APIRouter, FastAPI, Depends, Header, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, RedirectResponse
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from typing import Any, Dict, List, Optional

from update_server import auth, catalog, resolver
from update_server.admin import admin_router
from update_server.database import get_db, init_db
from update_server.errors import NotFound, RateLimited, Unauthorized, UpdateServerError, ValidationError
from update_server.fetcher import AssetFetcher, get_fetcher
from update_server.github import GitHubClient, get_github_client
from update_server.ingestion import ReleaseIngestor, build_test_release
from update_server.models import AuthorizedSite
from update_server.ratelimit import RateLimiter, client_address, limiter_for, rate_limit
from update_server.settings import Settings, get_settings
from update_server.versioning import canonical_version, is_valid_version

VERSION = "1.0.0"

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


configure_logging(get_settings())

app = FastAPI(title="Plugin Update Server", version=VERSION)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup():
    """Initialize the database on startup."""
    init_db()


@app.exception_handler(UpdateServerError)
async def handle_update_server_error(request: Request, exc: UpdateServerError):
    content: Dict[str, Any] = {"error": exc.message}
    headers = {}
    if isinstance(exc, RateLimited):
        content["retry_after"] = exc.retry_after
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception):
    logger.exception(
        "Unhandled error on %s %s from %s", request.method, request.url.path, client_address(request)
    )
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


class CheckMultipleRequest(BaseModel):
    plugins: List[Dict[str, Any]]


class WebhookTestRequest(BaseModel):
    repository: str
    tag_name: str
    body: Optional[str] = None
    prerelease: bool = False


class AdminLogin(BaseModel):
    username: str
    password: str


class ApiKeyVerify(BaseModel):
    api_key: str


@app.get("/")
def index():
    return {
        "message": "Plugin Update Server",
        "version": VERSION,
        "endpoints": {
            "health": "/health",
            "plugins": "/api/plugins",
            "updates": "/api/updates",
            "webhooks": "/api/webhooks",
            "admin": "/api/admin",
            "auth": "/api/auth",
        },
    }


HEALTH_CHECK_FILE = ".health-check"


def check_database(db: Session) -> dict:
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error("Health check: database unavailable: %s", e)
        return {"status": "unhealthy", "details": "Database connection failed"}
    return {"status": "healthy", "details": "Database connection successful"}


def check_github(github: GitHubClient) -> dict:
    try:
        rate = github.rate_limit().get("rate") or {}
    except UpdateServerError as e:
        logger.error("Health check: GitHub API unavailable: %s", e)
        return {"status": "unhealthy", "details": "GitHub API connection failed"}
    return {
        "status": "healthy",
        "details": f"Rate limit: {rate.get('remaining')}/{rate.get('limit')}",
    }


def check_upload_dir(upload_dir: str) -> dict:
    check_file = os.path.join(upload_dir, HEALTH_CHECK_FILE)
    try:
        os.makedirs(upload_dir, exist_ok=True)
        with open(check_file, "w") as f:
            f.write("ok")
        os.remove(check_file)
    except OSError as e:
        logger.error("Health check: upload directory %s not writable: %s", upload_dir, e)
        return {"status": "unhealthy", "details": "Upload directory not writable"}
    return {"status": "healthy", "details": "Upload directory writable"}


@app.get("/health")
def health(
    db: Session = Depends(get_db),
    github: GitHubClient = Depends(get_github_client),
    settings: Settings = Depends(get_settings),
):
    """Check the database, the GitHub API and the upload directory. 503 if any fails."""
    checks = {
        "database": check_database(db),
        "github": check_github(github),
        "uploads": check_upload_dir(settings.upload_dir),
    }
    healthy = all(check["status"] == "healthy" for check in checks.values())
    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "version": VERSION,
        },
    )


# -- public catalog ----------------------------------------------------------

plugins_router = APIRouter(prefix="/api/plugins", tags=["plugins"])


def _active_plugin_or_404(db: Session, slug: str):
    plugin = catalog.find_active_plugin(db, slug=slug)
    if plugin is None:
        raise NotFound("Plugin not found")
    return plugin


@plugins_router.get("")
def list_plugins(db: Session = Depends(get_db)) -> List[dict]:
    """Active plugins with their latest stable version."""
    plugins = []
    for plugin in catalog.list_active_plugins(db):
        data = catalog.plugin_to_dict(plugin)
        latest = catalog.latest_stable_version(db, plugin.id)
        data["latest_version"] = latest.version if latest else None
        data["latest_release"] = catalog.isoformat(latest.created_at) if latest else None
        data["total_downloads"] = sum(catalog.download_counts(db, plugin.id).values())
        plugins.append(data)
    return plugins


@plugins_router.get("/{slug}")
def get_plugin(slug: str, db: Session = Depends(get_db)):
    plugin = _active_plugin_or_404(db, slug)
    counts = catalog.download_counts(db, plugin.id)

    data = catalog.plugin_to_dict(plugin)
    data["versions"] = [
        catalog.version_to_dict(v, counts.get(v.id, 0)) for v in catalog.list_versions(db, plugin.id)
    ]
    return data


@plugins_router.get("/{slug}/stats")
def get_plugin_stats(slug: str, db: Session = Depends(get_db)):
    plugin = _active_plugin_or_404(db, slug)
    counts = catalog.download_counts(db, plugin.id)

    stats = catalog.plugin_stats(db, plugin.id)
    stats["slug"] = plugin.slug
    stats["versions"] = [
        {"version": v.version, "downloads": counts.get(v.id, 0)}
        for v in catalog.list_versions(db, plugin.id)
    ]
    return stats


# -- update checks -----------------------------------------------------------

updates_router = APIRouter(
    prefix="/api/updates",
    tags=["updates"],
    dependencies=[Depends(rate_limit("updates"))],
)


@updates_router.get("/check/{slug}")
def check_update(
    slug: str,
    version: Optional[str] = Query(None, description="Version installed on the client"),
    db: Session = Depends(get_db),
    site: Optional[AuthorizedSite] = Depends(auth.optional_site),
    settings: Settings = Depends(get_settings),
):
    """
    WordPress-compatible update check.

    Returns the update payload when a newer stable release exists, or
    ``up_to_date: true`` otherwise.
    """
    if not version:
        raise ValidationError("Plugin slug and current version are required")

    if site is not None:
        plugin = catalog.find_active_plugin(db, slug=slug)
        if plugin is not None:
            auth.ensure_site_scope(site, plugin)

    result = resolver.check_update(db, slug, version, settings.server_url)
    if isinstance(result, resolver.NotAvailable):
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content=result.to_dict())
    return result.to_dict()


@updates_router.post("/check-multiple")
def check_multiple(
    payload: CheckMultipleRequest,
    db: Session = Depends(get_db),
    site: Optional[AuthorizedSite] = Depends(auth.optional_site),
    settings: Settings = Depends(get_settings),
):
    return resolver.check_many(db, payload.plugins, settings.server_url, site=site)


@updates_router.get("/download/{slug}/{version}")
def download_plugin(
    slug: str,
    version: str,
    request: Request,
    db: Session = Depends(get_db),
    site: Optional[AuthorizedSite] = Depends(auth.optional_site),
    fetcher: AssetFetcher = Depends(get_fetcher),
    user_agent: Optional[str] = Header(None),
    x_wp_version: Optional[str] = Header(None),
    x_php_version: Optional[str] = Header(None),
    x_site_url: Optional[str] = Header(None),
):
    """Serve the stored archive, or redirect to GitHub when there is no local copy."""
    plugin = _active_plugin_or_404(db, slug)
    auth.ensure_site_scope(site, plugin)

    plugin_version = None
    if is_valid_version(version):
        plugin_version = catalog.get_version(db, plugin.id, canonical_version(version))
    if plugin_version is None:
        raise NotFound("Plugin version not found")

    try:
        catalog.record_download(
            db,
            plugin.id,
            plugin_version.id,
            ip_address=client_address(request),
            user_agent=user_agent,
            wp_version=x_wp_version,
            php_version=x_php_version,
            site_url=x_site_url,
        )
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Failed to record download of %s %s: %s", slug, version, e)

    if plugin_version.file_path:
        path = fetcher.resolve(plugin_version.file_path)
        if path is not None:
            return FileResponse(
                path,
                media_type="application/zip",
                filename=f"{slug}-{plugin_version.version}.zip",
            )
        logger.warning("Stored archive %s is missing", plugin_version.file_path)

    if plugin_version.download_url:
        return RedirectResponse(plugin_version.download_url, status_code=status.HTTP_302_FOUND)

    raise NotFound("File not available")


@updates_router.get("/info/{slug}")
def plugin_info(
    slug: str,
    db: Session = Depends(get_db),
    site: Optional[AuthorizedSite] = Depends(auth.optional_site),
):
    plugin = _active_plugin_or_404(db, slug)
    auth.ensure_site_scope(site, plugin)
    counts = catalog.download_counts(db, plugin.id)

    data = catalog.plugin_to_dict(plugin)
    data["versions"] = [
        catalog.version_to_dict(v, counts.get(v.id, 0)) for v in catalog.list_versions(db, plugin.id)
    ]
    data["stats"] = catalog.plugin_stats(db, plugin.id)
    data["last_updated"] = data["updated_at"]
    return data


# -- webhooks ----------------------------------------------------------------

webhooks_router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@webhooks_router.post("/github")
async def github_webhook(
    request: Request,
    limiter: Optional[RateLimiter] = Depends(limiter_for("webhooks")),
    db: Session = Depends(get_db),
    fetcher: AssetFetcher = Depends(get_fetcher),
    settings: Settings = Depends(get_settings),
    x_hub_signature_256: Optional[str] = Header(None),
    x_github_event: Optional[str] = Header(None),
):
    """
    GitHub release webhook.

    Ignored events, unregistered repositories and duplicate releases are
    acknowledged with 200 so GitHub does not retry them. Only rejected
    deliveries count against the webhook rate limit, so a burst of genuine
    releases is never answered with 429.
    """
    body = await request.body()
    ingestor = ReleaseIngestor(db, fetcher=fetcher, webhook_secret=settings.github_webhook_secret)
    try:
        result = await run_in_threadpool(
            ingestor.handle_delivery, body, x_hub_signature_256, x_github_event
        )
    except Unauthorized:
        if limiter is not None:
            limiter.check(client_address(request))
        raise
    return result.to_dict()


@webhooks_router.post("/test", dependencies=[Depends(auth.require_admin)])
def test_webhook(
    payload: WebhookTestRequest,
    db: Session = Depends(get_db),
    fetcher: AssetFetcher = Depends(get_fetcher),
):
    """Run a synthetic published-release event through the ingestion pipeline."""
    event = build_test_release(payload.repository, payload.tag_name, payload.body, payload.prerelease)
    result = ReleaseIngestor(db, fetcher=fetcher).handle_event("release", event)
    return result.to_dict()


@webhooks_router.get("/status")
def webhook_status(settings: Settings = Depends(get_settings)):
    return {
        "webhook_configured": bool(settings.github_webhook_secret),
        "github_token_configured": bool(settings.github_token),
        "server_url": settings.server_url,
        "upload_dir": settings.upload_dir,
    }


# -- auth --------------------------------------------------------------------

auth_router = APIRouter(prefix="/api/auth", tags=["auth"])


@auth_router.post("/admin/login", dependencies=[Depends(rate_limit("login"))])
def admin_login(payload: AdminLogin, settings: Settings = Depends(get_settings)):
    token = auth.issue_admin_token(payload.username, payload.password, settings)
    return {
        "token": token,
        "expires_in": f"{settings.jwt_expires_hours}h",
        "message": "Token generated",
    }


@auth_router.post("/verify", dependencies=[Depends(auth.require_admin)])
def verify_api_key(payload: ApiKeyVerify, db: Session = Depends(get_db)):
    site = auth.find_site_by_key(db, payload.api_key, active_only=False)
    if site is None:
        raise NotFound("API key not found")

    data = auth.site_to_dict(site)
    data["valid"] = site.active
    return data


app.include_router(plugins_router)
app.include_router(updates_router)
app.include_router(webhooks_router)
app.include_router(auth_router)
app.include_router(admin_router)
