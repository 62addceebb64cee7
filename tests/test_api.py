import json
import os

from update_server import catalog
from update_server.app import app
from update_server.catalog import VersionRecord
from update_server.errors import UpstreamUnavailable
from update_server.github import get_github_client
from update_server.ingestion import sign_payload
from update_server.settings import RateLimitSpec, get_settings

from .conftest import ADMIN_PASSWORD, SERVER_URL, WEBHOOK_SECRET
from .fakes import FakeGitHub, release_payload


def _post_webhook(client, payload, event="release", secret=WEBHOOK_SECRET, signature=None):
    body = json.dumps(payload).encode("utf-8")
    headers = {"X-GitHub-Event": event, "Content-Type": "application/json"}
    if signature is None and secret:
        signature = sign_payload(body, secret)
    if signature:
        headers["X-Hub-Signature-256"] = signature
    return client.post("/api/webhooks/github", content=body, headers=headers)


def _use_settings(**changes):
    current = app.dependency_overrides[get_settings]()
    updated = current.model_copy(update=changes)
    app.dependency_overrides[get_settings] = lambda: updated
    return updated


def test_health(client):
    app.dependency_overrides[get_github_client] = lambda: FakeGitHub()

    resp = client.get("/health")

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert {name: check["status"] for name, check in body["checks"].items()} == {
        "database": "healthy",
        "github": "healthy",
        "uploads": "healthy",
    }
    assert body["checks"]["github"]["details"] == "Rate limit: 4999/5000"


def test_health_reports_unreachable_github(client):
    app.dependency_overrides[get_github_client] = lambda: FakeGitHub(error=UpstreamUnavailable("down"))

    resp = client.get("/health")

    assert resp.status_code == 503
    assert resp.json()["status"] == "unhealthy"
    assert resp.json()["checks"]["github"]["status"] == "unhealthy"
    assert resp.json()["checks"]["database"]["status"] == "healthy"


def test_health_reports_unwritable_upload_dir(client, tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("file in the way")
    _use_settings(upload_dir=str(blocker))
    app.dependency_overrides[get_github_client] = lambda: FakeGitHub()

    resp = client.get("/health")

    assert resp.status_code == 503
    assert resp.json()["checks"]["uploads"]["status"] == "unhealthy"


def test_webhook_then_update_check(client, plugin):
    resp = _post_webhook(client, release_payload("v2.0.0"))
    assert resp.status_code == 200
    assert resp.json()["status"] == "processed"

    resp = client.get("/api/updates/check/my-plugin", params={"version": "1.0.0"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["new_version"] == "2.0.0"
    assert body["package"] == f"{SERVER_URL}/api/updates/download/my-plugin/2.0.0"
    assert body["sections"]["changelog"] == "- Fixed a bug"


def test_replayed_webhook_is_acknowledged_as_duplicate(client, plugin):
    _post_webhook(client, release_payload("v2.0.0"))

    resp = _post_webhook(client, release_payload("v2.0.0"))

    assert resp.status_code == 200
    assert resp.json()["status"] == "duplicate"


def test_webhook_with_bad_signature(client, plugin):
    resp = _post_webhook(client, release_payload("v2.0.0"), signature="sha256=" + "0" * 64)

    assert resp.status_code == 401
    assert resp.json() == {"error": "Invalid or missing credentials"}
    assert client.get("/api/plugins/my-plugin").json()["versions"] == []


def test_webhook_without_signature(client, plugin):
    resp = _post_webhook(client, release_payload("v2.0.0"), secret=None)

    assert resp.status_code == 401


def test_webhook_ignored_event(client, plugin):
    resp = _post_webhook(client, {"zen": "Anything added dilutes everything else."}, event="ping")

    assert resp.status_code == 200
    assert resp.json()["status"] == "ignored"


def test_webhook_unregistered_repository(client):
    resp = _post_webhook(client, release_payload("v2.0.0", owner="nobody"))

    assert resp.status_code == 200
    assert resp.json()["status"] == "unregistered"


def test_webhook_invalid_json(client):
    body = b"not json"
    resp = client.post(
        "/api/webhooks/github",
        content=body,
        headers={"X-GitHub-Event": "release", "X-Hub-Signature-256": sign_payload(body, WEBHOOK_SECRET)},
    )

    assert resp.status_code == 400


def test_signed_webhooks_are_not_rate_limited(client, plugin):
    limits = dict(app.dependency_overrides[get_settings]().rate_limits)
    limits["webhooks"] = RateLimitSpec(max_requests=2, window_seconds=60)
    _use_settings(rate_limits=limits)

    signed = [
        _post_webhook(client, release_payload(f"v1.0.{i}", release_id=i)).status_code
        for i in range(4)
    ]
    rejected = [
        _post_webhook(client, release_payload("v9.0.0"), signature="sha256=" + "0" * 64).status_code
        for _ in range(3)
    ]

    assert signed == [200, 200, 200, 200]
    assert rejected == [401, 401, 429]


def test_webhook_status(client):
    body = client.get("/api/webhooks/status").json()

    assert body["webhook_configured"] is True
    assert body["server_url"] == SERVER_URL


# -- update checks -------------------------------------------------------------


def test_check_up_to_date(client, db, plugin):
    catalog.register_version(db, plugin.id, VersionRecord(version="1.0.0"))

    resp = client.get("/api/updates/check/my-plugin", params={"version": "1.0.0"})

    assert resp.status_code == 200
    assert resp.json()["up_to_date"] is True


def test_check_unknown_plugin(client):
    resp = client.get("/api/updates/check/missing", params={"version": "1.0.0"})

    assert resp.status_code == 404
    assert resp.json() == {"error": "Plugin not found"}


def test_check_requires_version(client, plugin):
    resp = client.get("/api/updates/check/my-plugin")

    assert resp.status_code == 400
    assert "error" in resp.json()


def test_check_invalid_version(client, plugin):
    resp = client.get("/api/updates/check/my-plugin", params={"version": "banana"})

    assert resp.status_code == 400


def test_check_multiple(client, db, plugin):
    catalog.register_version(db, plugin.id, VersionRecord(version="2.0.0"))

    resp = client.post(
        "/api/updates/check-multiple",
        json={"plugins": [{"slug": "my-plugin", "version": "1.0.0"}, {"slug": "gone", "version": "1.0"}]},
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["my-plugin"]["new_version"] == "2.0.0"
    assert body["gone"] == {"error": "Plugin not found"}


def test_download_redirects_to_github(client, db, plugin):
    url = "https://github.com/acme/my-plugin/archive/refs/tags/v1.0.0.zip"
    catalog.register_version(db, plugin.id, VersionRecord(version="1.0.0", download_url=url))

    resp = client.get("/api/updates/download/my-plugin/1.0.0", follow_redirects=False)

    assert resp.status_code == 302
    assert resp.headers["location"] == url
    assert catalog.plugin_stats(db, plugin.id)["total_downloads"] == 1


def test_download_serves_local_archive(client, db, plugin, settings):
    os.makedirs(settings.upload_dir, exist_ok=True)
    with open(os.path.join(settings.upload_dir, "my-plugin-1.0.0.zip"), "wb") as f:
        f.write(b"PK\x03\x04archive")
    catalog.register_version(
        db,
        plugin.id,
        VersionRecord(version="1.0.0", file_path="my-plugin-1.0.0.zip", download_url="https://example.invalid"),
    )

    resp = client.get("/api/updates/download/my-plugin/1.0.0", headers={"X-WP-Version": "6.4"})

    assert resp.status_code == 200
    assert resp.content == b"PK\x03\x04archive"
    assert resp.headers["content-type"] == "application/zip"
    assert "my-plugin-1.0.0.zip" in resp.headers["content-disposition"]


def test_download_accepts_any_spelling_of_the_version(client, db, plugin):
    url = "https://github.com/acme/my-plugin/archive/refs/tags/v1.2.0.zip"
    catalog.register_version(db, plugin.id, VersionRecord(version="1.2.0", download_url=url))

    for spelling in ["v1.2.0", "1.2", "1.2.0"]:
        resp = client.get(f"/api/updates/download/my-plugin/{spelling}", follow_redirects=False)
        assert resp.status_code == 302, spelling
        assert resp.headers["location"] == url


def test_download_unknown_version(client, plugin):
    resp = client.get("/api/updates/download/my-plugin/9.9.9")

    assert resp.status_code == 404


def test_plugin_info_and_listing(client, db, plugin):
    catalog.register_version(db, plugin.id, VersionRecord(version="1.0.0"))
    catalog.register_version(db, plugin.id, VersionRecord(version="1.1.0-beta", is_prerelease=True))

    listing = client.get("/api/plugins").json()
    info = client.get("/api/updates/info/my-plugin").json()

    assert listing[0]["slug"] == "my-plugin"
    assert listing[0]["latest_version"] == "1.0.0"
    assert [v["version"] for v in info["versions"]] == ["1.1.0-beta", "1.0.0"]
    assert info["stats"]["total_downloads"] == 0


# -- site keys -----------------------------------------------------------------


def _create_key(client, admin_headers, plugin_id=None):
    resp = client.post(
        "/api/admin/api-keys",
        json={"site_url": "https://blog.example.org", "plugin_id": plugin_id},
        headers=admin_headers,
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


def test_required_api_key(client, admin_headers, db, plugin):
    _use_settings(require_api_key=True)
    catalog.register_version(db, plugin.id, VersionRecord(version="1.0.0"))

    anonymous = client.get("/api/updates/check/my-plugin", params={"version": "1.0.0"})
    assert anonymous.status_code == 401

    key = _create_key(client, admin_headers, plugin.id)["api_key"]
    resp = client.get(
        "/api/updates/check/my-plugin",
        params={"version": "1.0.0"},
        headers={"Authorization": f"Bearer {key}"},
    )
    assert resp.status_code == 200


def test_revoked_and_regenerated_keys(client, admin_headers, plugin):
    site = _create_key(client, admin_headers, plugin.id)
    old_headers = {"Authorization": f"Bearer {site['api_key']}"}

    resp = client.delete(f"/api/admin/api-keys/{site['id']}", headers=admin_headers)
    assert resp.status_code == 200
    resp = client.get("/api/updates/check/my-plugin", params={"version": "1.0.0"}, headers=old_headers)
    assert resp.status_code == 401

    regenerated = client.post(f"/api/admin/api-keys/{site['id']}/regenerate", headers=admin_headers).json()
    assert regenerated["api_key"] != site["api_key"]
    assert regenerated["active"] is True
    resp = client.get(
        "/api/updates/check/my-plugin",
        params={"version": "1.0.0"},
        headers={"Authorization": f"Bearer {regenerated['api_key']}"},
    )
    assert resp.status_code == 404
    assert resp.json() == {"error": "No stable release available"}


def test_scoped_key_cannot_download_other_plugin(client, admin_headers, db, plugin):
    other = catalog.create_plugin(
        db, {"slug": "other", "name": "Other", "github_owner": "acme", "github_repo": "other"}
    )
    catalog.register_version(db, other.id, VersionRecord(version="1.0.0", download_url="https://x.test/o.zip"))
    key = _create_key(client, admin_headers, plugin.id)["api_key"]

    resp = client.get(
        "/api/updates/download/other/1.0.0",
        headers={"Authorization": f"Bearer {key}"},
        follow_redirects=False,
    )

    assert resp.status_code == 403


def test_api_key_listing_hides_keys(client, admin_headers, plugin):
    _create_key(client, admin_headers, plugin.id)

    keys = client.get("/api/admin/api-keys", headers=admin_headers).json()

    assert len(keys) == 1
    assert "api_key" not in keys[0]
    assert keys[0]["has_api_key"] is True


def test_verify_api_key(client, admin_headers, plugin):
    site = _create_key(client, admin_headers, plugin.id)

    resp = client.post("/api/auth/verify", json={"api_key": site["api_key"]}, headers=admin_headers)

    assert resp.status_code == 200
    assert resp.json()["valid"] is True


# -- admin ---------------------------------------------------------------------


def test_admin_requires_credentials(client):
    assert client.get("/api/admin/plugins").status_code == 401
    assert client.get("/api/admin/plugins", headers={"Authorization": "Basic abc"}).status_code == 401
    assert client.get("/api/admin/plugins", headers={"Authorization": "Bearer garbage"}).status_code == 401


def test_site_key_is_not_an_admin_credential(client, admin_headers, plugin):
    key = _create_key(client, admin_headers, plugin.id)["api_key"]

    resp = client.get("/api/admin/plugins", headers={"Authorization": f"Bearer {key}"})

    assert resp.status_code == 403


def test_admin_plugin_lifecycle(client, admin_headers):
    resp = client.post(
        "/api/admin/plugins",
        json={"slug": "fresh", "name": "Fresh", "github_owner": "acme", "github_repo": "fresh"},
        headers=admin_headers,
    )
    assert resp.status_code == 201
    plugin_id = resp.json()["id"]

    dup = client.post(
        "/api/admin/plugins",
        json={"slug": "fresh", "name": "Again", "github_owner": "acme", "github_repo": "again"},
        headers=admin_headers,
    )
    assert dup.status_code == 409

    resp = client.put("/api/admin/plugins/fresh", json={"tested_wp": "6.5"}, headers=admin_headers)
    assert resp.json()["tested_wp"] == "6.5"

    assert client.get(f"/api/admin/plugins/{plugin_id}/versions", headers=admin_headers).json() == []
    missing = client.get("/api/admin/plugins/9999/versions", headers=admin_headers)
    assert missing.status_code == 404
    assert missing.json() == {"error": "Plugin not found"}

    resp = client.delete("/api/admin/plugins/fresh", headers=admin_headers)
    assert resp.status_code == 200
    assert client.get("/api/plugins/fresh").status_code == 404

    listing = client.get("/api/admin/plugins", headers=admin_headers).json()
    assert [p["active"] for p in listing if p["slug"] == "fresh"] == [False]
    assert client.get(f"/api/admin/plugins/{plugin_id}/versions", headers=admin_headers).status_code == 200


def test_admin_sync(client, admin_headers, plugin):
    release = release_payload("v1.4.0", release_id=14)["release"]
    app.dependency_overrides[get_github_client] = lambda: FakeGitHub({("acme", "my-plugin"): [release]})

    resp = client.post(f"/api/admin/sync/{plugin.id}", headers=admin_headers)

    assert resp.status_code == 200
    assert resp.json()["synced_versions"] == 1

    resp = client.post("/api/admin/sync-all", headers=admin_headers)
    assert resp.json()["results"][0]["synced_versions"] == 0


def test_manual_webhook_trigger(client, admin_headers, plugin):
    resp = client.post(
        "/api/webhooks/test",
        json={"repository": "acme/my-plugin", "tag_name": "v1.2.3"},
        headers=admin_headers,
    )

    assert resp.status_code == 200
    assert resp.json()["version"] == "1.2.3"
    assert client.post("/api/webhooks/test", json={"repository": "acme/my-plugin", "tag_name": "v1"}).status_code == 401


def test_auth_stats(client, admin_headers, plugin):
    _create_key(client, admin_headers, plugin.id)

    stats = client.get("/api/admin/auth-stats", headers=admin_headers).json()

    assert stats["total_sites"] == 1
    assert stats["active_sites"] == 1


# -- login and rate limits -----------------------------------------------------


def test_login_failure(client):
    resp = client.post("/api/auth/admin/login", json={"username": "admin", "password": "nope"})

    assert resp.status_code == 401


def test_login_not_configured(client):
    _use_settings(admin_password=None)

    resp = client.post("/api/auth/admin/login", json={"username": "admin", "password": ADMIN_PASSWORD})

    assert resp.status_code == 503
    assert resp.json() == {"error": "Admin credentials are not configured"}


def test_login_is_rate_limited(client):
    for _ in range(5):
        resp = client.post("/api/auth/admin/login", json={"username": "admin", "password": "nope"})
        assert resp.status_code == 401

    resp = client.post("/api/auth/admin/login", json={"username": "admin", "password": ADMIN_PASSWORD})

    assert resp.status_code == 429
    retry_after = int(resp.headers["Retry-After"])
    assert 1 <= retry_after <= 60
    assert resp.json()["retry_after"] == retry_after


def test_update_checks_are_rate_limited(client, plugin):
    limits = dict(app.dependency_overrides[get_settings]().rate_limits)
    limits["updates"] = RateLimitSpec(max_requests=2, window_seconds=60)
    _use_settings(rate_limits=limits)

    statuses = [
        client.get("/api/updates/check/my-plugin", params={"version": "1.0.0"}).status_code
        for _ in range(3)
    ]

    assert statuses == [404, 404, 429]
