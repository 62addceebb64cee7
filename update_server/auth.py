"""
Authorization gateway.

Two credential classes travel in the same ``Authorization: Bearer`` header
and are told apart by lookup, not by format:

* site API keys, opaque ``wpup_`` tokens stored in ``authorized_sites`` and
  scoped to the update-check/download surface;
* admin tokens, HS256 JWTs issued by the admin login and verified for
  signature and expiry.
"""

import hmac
import logging
import secrets

from datetime import timedelta
from typing import List, Optional

import jwt

from fastapi import Depends, Request
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from update_server.catalog import get_plugin, isoformat
from update_server.database import get_db
from update_server.errors import (
    Conflict,
    Forbidden,
    NotFound,
    ServiceNotConfigured,
    Unauthorized,
    ValidationError,
)
from update_server.models import AuthorizedSite, Plugin, utcnow
from update_server.settings import Settings, get_settings

logger = logging.getLogger(__name__)

API_KEY_PREFIX = "wpup"
JWT_ALGORITHM = "HS256"


def generate_api_key() -> str:
    """``wpup_`` followed by 128 random bits in hex."""
    return f"{API_KEY_PREFIX}_{secrets.token_hex(16)}"


# -- site keys ---------------------------------------------------------------


def create_site(db: Session, site_url: str, plugin_id: Optional[int] = None) -> AuthorizedSite:
    if not site_url:
        raise ValidationError("site_url is required")

    if plugin_id is not None and get_plugin(db, plugin_id) is None:
        raise NotFound("Plugin not found")

    site = AuthorizedSite(
        site_url=site_url,
        api_key=generate_api_key(),
        plugin_id=plugin_id,
        active=True,
        created_at=utcnow(),
    )
    db.add(site)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise Conflict("An API key already exists for this site/plugin")

    db.refresh(site)
    logger.info("Issued API key for %s (plugin %s)", site_url, plugin_id)
    return site


def list_sites(db: Session) -> List[AuthorizedSite]:
    return db.query(AuthorizedSite).order_by(AuthorizedSite.created_at.desc()).all()


def _get_site(db: Session, site_id: int) -> AuthorizedSite:
    site = db.query(AuthorizedSite).filter(AuthorizedSite.id == site_id).first()
    if site is None:
        raise NotFound("Site not found")
    return site


def revoke_site(db: Session, site_id: int) -> AuthorizedSite:
    site = _get_site(db, site_id)
    site.active = False
    db.commit()
    logger.info("Revoked API key of site %s", site.site_url)
    return site


def regenerate_site_key(db: Session, site_id: int) -> AuthorizedSite:
    """Replace the key of a grant and reactivate it. The old value stops working at once."""
    site = _get_site(db, site_id)
    site.api_key = generate_api_key()
    site.active = True
    db.commit()
    db.refresh(site)
    logger.info("Regenerated API key of site %s", site.site_url)
    return site


def find_site_by_key(db: Session, api_key: str, active_only: bool = True) -> Optional[AuthorizedSite]:
    q = db.query(AuthorizedSite).filter(AuthorizedSite.api_key == api_key)
    if active_only:
        q = q.filter(AuthorizedSite.active.is_(True))
    return q.first()


def authenticate_site_key(db: Session, api_key: str) -> AuthorizedSite:
    site = find_site_by_key(db, api_key)
    if site is None:
        logger.warning("Rejected unknown or revoked API key")
        raise Unauthorized()

    # Only last_check is written here, so concurrent requests can at worst
    # overwrite each other's timestamp.
    db.query(AuthorizedSite).filter(AuthorizedSite.id == site.id).update(
        {"last_check": utcnow()}, synchronize_session=False
    )
    db.commit()
    return site


def site_key_stats(db: Session) -> dict:
    now = utcnow().replace(tzinfo=None)
    total = db.query(func.count(AuthorizedSite.id)).scalar()
    active = db.query(func.count(AuthorizedSite.id)).filter(AuthorizedSite.active.is_(True)).scalar()
    last_24h = (
        db.query(func.count(AuthorizedSite.id))
        .filter(AuthorizedSite.last_check > now - timedelta(hours=24))
        .scalar()
    )
    last_7d = (
        db.query(func.count(AuthorizedSite.id))
        .filter(AuthorizedSite.last_check > now - timedelta(days=7))
        .scalar()
    )
    return {
        "total_sites": total,
        "active_sites": active,
        "active_last_24h": last_24h,
        "active_last_7d": last_7d,
    }


def site_to_dict(site: AuthorizedSite, include_key: bool = False) -> dict:
    data = {
        "id": site.id,
        "site_url": site.site_url,
        "plugin_id": site.plugin_id,
        "plugin_slug": site.plugin.slug if site.plugin else None,
        "active": site.active,
        "created_at": isoformat(site.created_at),
        "last_check": isoformat(site.last_check),
    }
    if include_key:
        data["api_key"] = site.api_key
    else:
        data["has_api_key"] = True
    return data


# -- admin tokens ------------------------------------------------------------


def issue_admin_token(username: str, password: str, settings: Settings) -> str:
    if not settings.admin_password or not settings.jwt_secret:
        raise ServiceNotConfigured("Admin credentials are not configured")

    user_ok = hmac.compare_digest(username.encode("utf-8"), settings.admin_username.encode("utf-8"))
    password_ok = hmac.compare_digest(password.encode("utf-8"), settings.admin_password.encode("utf-8"))
    if not (user_ok and password_ok):
        logger.warning("Failed admin login for %r", username)
        raise Unauthorized("Invalid credentials")

    now = utcnow()
    claims = {
        "username": username,
        "isAdmin": True,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(hours=settings.jwt_expires_hours)).timestamp()),
    }
    logger.info("Issued admin token for %s", username)
    return jwt.encode(claims, settings.jwt_secret, algorithm=JWT_ALGORITHM)


def decode_admin_token(token: str, settings: Settings) -> dict:
    if not settings.jwt_secret:
        raise ServiceNotConfigured("Admin credentials are not configured")
    try:
        claims = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[JWT_ALGORITHM],
            options={"require": ["exp"]},
        )
    except jwt.InvalidTokenError as e:
        logger.warning("Rejected admin token: %s", type(e).__name__)
        raise Unauthorized() from e

    if not claims.get("isAdmin"):
        raise Forbidden("Admin permissions required")
    return claims


# -- FastAPI dependencies ----------------------------------------------------


def bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization")
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthorized()
    return token.strip()


def require_admin(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> dict:
    token = bearer_token(request)
    if token is None:
        raise Unauthorized()

    # A site key is a valid credential, just not an admin one
    if find_site_by_key(db, token, active_only=False) is not None:
        raise Forbidden("Admin permissions required")

    return decode_admin_token(token, settings)


def optional_site(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> Optional[AuthorizedSite]:
    """The calling site's grant, or None for anonymous callers when keys are optional."""
    token = bearer_token(request)
    if token is None:
        if settings.require_api_key:
            raise Unauthorized()
        return None
    return authenticate_site_key(db, token)


def ensure_site_scope(site: Optional[AuthorizedSite], plugin: Plugin) -> None:
    if site is not None and site.plugin_id is not None and site.plugin_id != plugin.id:
        logger.warning("API key of %s used for plugin %s outside its scope", site.site_url, plugin.slug)
        raise Forbidden("API key is not valid for this plugin")
