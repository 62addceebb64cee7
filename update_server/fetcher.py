import os
import uuid
import logging
import requests

from pathlib import Path
from threading import Event
from typing import Optional

from fastapi import Depends

from update_server.errors import UpstreamUnavailable
from update_server.settings import Settings, get_settings

logger = logging.getLogger(__name__)

USER_AGENT = "WordPress-Plugin-Update-Server/1.0"
CHUNK_SIZE = 64 * 1024


class FetchCancelled(Exception):
    """The request that owned the download went away."""


def archive_name(slug: str, version: str, extension: str = "zip") -> str:
    return f"{slug}-{version}.{extension}"


class AssetFetcher:
    """
    Stream release archives into the upload directory.

    A download is written to ``<name>.part`` and renamed into place once
    complete, so the upload directory never holds a truncated archive
    under its final name.
    """

    def __init__(
        self,
        upload_dir: str,
        token: Optional[str] = None,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.upload_dir = Path(upload_dir)
        self.token = token
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self) -> dict:
        headers = {
            "User-Agent": USER_AGENT,
            "Accept": "application/octet-stream",
        }
        if self.token:
            headers["Authorization"] = f"token {self.token}"
        return headers

    def fetch(
        self,
        url: str,
        slug: str,
        version: str,
        cancel_event: Optional[Event] = None,
    ) -> str:
        """Download ``url`` as ``{slug}-{version}.zip``. Returns the name relative to the upload dir."""
        self.upload_dir.mkdir(parents=True, exist_ok=True)

        file_name = archive_name(slug, version)
        target = self.upload_dir / file_name
        partial = target.with_name(target.name + f".{uuid.uuid4().hex[:12]}.part")

        logger.info("Downloading %s for %s %s", url, slug, version)

        try:
            with self.session.get(
                url,
                headers=self._headers(),
                stream=True,
                timeout=self.timeout,
            ) as resp:
                resp.raise_for_status()
                with partial.open("wb") as f:
                    for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                        if cancel_event is not None and cancel_event.is_set():
                            raise FetchCancelled(f"download of {file_name} cancelled")
                        if chunk:
                            f.write(chunk)
            os.replace(partial, target)
        except requests.RequestException as e:
            self._discard(partial)
            raise UpstreamUnavailable(f"Failed to download {url}: {e}") from e
        except BaseException:
            self._discard(partial)
            raise

        logger.info("Stored %s (%d bytes)", file_name, target.stat().st_size)
        return file_name

    def resolve(self, file_path: str) -> Optional[Path]:
        """Absolute path of a stored archive, or None if it is missing or outside the upload dir."""
        root = self.upload_dir.resolve()
        path = (root / file_path).resolve()
        if root not in path.parents or not path.is_file():
            return None
        return path

    @staticmethod
    def _discard(path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error("Failed to remove partial download %s: %s", path, e)


def get_fetcher(settings: Settings = Depends(get_settings)) -> AssetFetcher:
    return AssetFetcher(
        settings.upload_dir,
        token=settings.github_token,
        timeout=settings.download_timeout,
    )
