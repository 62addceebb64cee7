"""
Thin GitHub REST API client used for release reconciliation and admin
introspection.
"""

import logging
import requests

from typing import Any, Dict, List, Optional

from fastapi import Depends

from update_server.errors import NotFound, UpstreamUnavailable
from update_server.fetcher import USER_AGENT
from update_server.settings import Settings, get_settings

logger = logging.getLogger(__name__)


class GitHubClient:
    def __init__(
        self,
        base_url: str = "https://api.github.com",
        token: Optional[str] = None,
        timeout: float = 15.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.headers = {
            "User-Agent": USER_AGENT,
            "Accept": "application/vnd.github.v3+json",
        }
        if token:
            self.headers["Authorization"] = f"token {token}"

    def _get(self, path: str, params: Optional[dict] = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.get(url, headers=self.headers, params=params, timeout=self.timeout)
        except requests.Timeout as e:
            logger.warning("GitHub request timed out: %s", url)
            raise UpstreamUnavailable(f"GitHub request timed out: {path}") from e
        except requests.RequestException as e:
            logger.error("GitHub request failed: %s: %s", url, e)
            raise UpstreamUnavailable(f"GitHub request failed: {path}") from e

        if resp.status_code == 404:
            raise NotFound(f"GitHub resource not found: {path}")
        if resp.status_code >= 400:
            logger.error("GitHub returned %s for %s", resp.status_code, url)
            raise UpstreamUnavailable(f"GitHub returned {resp.status_code} for {path}")

        return resp.json()

    def get_repository(self, owner: str, repo: str) -> Dict[str, Any]:
        return self._get(f"/repos/{owner}/{repo}")

    def list_releases(
        self, owner: str, repo: str, page: int = 1, per_page: int = 50
    ) -> List[Dict[str, Any]]:
        return self._get(
            f"/repos/{owner}/{repo}/releases",
            params={"page": page, "per_page": per_page},
        )

    def rate_limit(self) -> Dict[str, Any]:
        return self._get("/rate_limit")


def get_github_client(settings: Settings = Depends(get_settings)) -> GitHubClient:
    return GitHubClient(
        base_url=settings.github_api_url,
        token=settings.github_token,
        timeout=settings.request_timeout,
    )
