"""HTTP client for the AList file-listing API."""

from __future__ import annotations

import logging
import posixpath
from datetime import datetime
from typing import Any, Optional, Sequence

import requests
from pydantic import BaseModel, ValidationError

from strmsync.errors import AlistError
from strmsync.models import RemoteItem

logger = logging.getLogger(__name__)


class FileEntry(BaseModel):
    """One entry of a directory listing."""

    name: str
    size: int = 0
    is_dir: bool = False
    modified: Optional[datetime] = None
    sign: str = ""


class ListData(BaseModel):
    content: Optional[list[FileEntry]] = None
    total: int = 0


class FileInfo(FileEntry):
    raw_url: str = ""


class ApiResponse(BaseModel):
    """Envelope shared by every AList endpoint."""

    code: int
    message: str = ""
    data: Optional[dict[str, Any]] = None


def matches_extension(name: str, extensions: Sequence[str], case_sensitive: bool = True) -> bool:
    """Return True if ``name`` ends in ``.ext`` for one of ``extensions``."""
    if not case_sensitive:
        name = name.lower()
    for ext in extensions:
        ext = ext.lstrip(".")
        if not case_sensitive:
            ext = ext.lower()
        suffix = "." + ext
        if len(name) > len(suffix) and name.endswith(suffix):
            return True
    return False


class AlistClient:
    """Lists remote trees and resolves playable URLs through AList.

    Extension filtering is case-sensitive unless ``case_sensitive`` is
    turned off, so ``movie.MP4`` does not match ``mp4`` by default.
    """

    def __init__(
        self,
        base_url: str,
        token: str = "",
        *,
        sign_enabled: bool = False,
        timeout: float = 30,
        case_sensitive: bool = True,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.sign_enabled = sign_enabled
        self.timeout = timeout
        self.case_sensitive = case_sensitive
        self.session = session or requests.Session()
        self.session.headers["Content-Type"] = "application/json"
        if token:
            self.session.headers["Authorization"] = token

    def _post(self, endpoint: str, payload: dict[str, Any]) -> dict[str, Any] | None:
        url = self.base_url + endpoint
        try:
            resp = self.session.post(url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise AlistError(f"request to {endpoint} failed: {e}") from e

        if resp.status_code != 200:
            raise AlistError(f"HTTP {resp.status_code} from {endpoint}: {resp.text[:200]}")

        try:
            envelope = ApiResponse.model_validate(resp.json())
        except (ValueError, ValidationError) as e:
            raise AlistError(f"malformed response from {endpoint}: {e}") from e

        if envelope.code != 200:
            raise AlistError(f"alist API error: {envelope.message} (code: {envelope.code})")
        return envelope.data

    def ping(self) -> None:
        """Raise AlistError if the server is unreachable."""
        try:
            resp = self.session.get(self.base_url + "/ping", timeout=self.timeout)
        except requests.RequestException as e:
            raise AlistError(f"cannot reach AList server: {e}") from e
        if resp.status_code != 200:
            raise AlistError(f"AList server returned status {resp.status_code}")

    def list_files(self, path: str) -> list[FileEntry]:
        data = self._post("/api/fs/list", {"path": path, "refresh": False})
        if data is None:
            return []
        try:
            listing = ListData.model_validate(data)
        except ValidationError as e:
            raise AlistError(f"malformed listing for {path}: {e}") from e
        return listing.content or []

    def list_recursive(self, root: str, extensions: Sequence[str]) -> list[RemoteItem]:
        """Walk ``root`` depth-first and return matching files with full paths."""
        result: list[RemoteItem] = []
        self._walk(root, extensions, result)
        return result

    def _walk(self, directory: str, extensions: Sequence[str], result: list[RemoteItem]) -> None:
        for entry in self.list_files(directory):
            full_path = posixpath.join(directory, entry.name)
            if entry.is_dir:
                self._walk(full_path, extensions, result)
            elif matches_extension(entry.name, extensions, self.case_sensitive):
                result.append(RemoteItem(
                    path=full_path,
                    is_dir=False,
                    size=entry.size,
                    modified=entry.modified,
                ))
        logger.debug("Listed %s", directory)

    def resolve(self, path: str) -> str:
        """Return a direct URL for ``path``.

        Prefers the storage's raw URL; otherwise builds the AList download
        URL, signed when signing is enabled.
        """
        data = self._post("/api/fs/get", {"path": path})
        if data is None:
            raise AlistError(f"file not found: {path}")
        try:
            info = FileInfo.model_validate(data)
        except ValidationError as e:
            raise AlistError(f"malformed file info for {path}: {e}") from e

        if info.raw_url:
            return info.raw_url

        url = f"{self.base_url}/d{path}"
        if self.sign_enabled and info.sign:
            url += f"?sign={info.sign}"
        return url
