"""
Kanban board collaborator.

Pipelines depend only on the Board protocol. TrelloBoard implements it over
the Trello REST API with ``requests``; each blocking call runs in a worker
thread via ``asyncio.to_thread`` so the event loop never blocks.

Every request is retried on HTTP 429, 5xx, connection errors and timeouts,
up to ``max_retries`` attempts with exponential backoff and no jitter.
Anything else, or exhausting the attempts, raises ApiError.
"""

from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional, Protocol
from urllib.parse import urlparse

import requests

from cardflow.errors import ApiError
from cardflow.models import Attachment, Card, Comment
from cardflow.utils.fs import safe_write_bytes

if TYPE_CHECKING:
    from cardflow.config import BoardConfig
    from cardflow.logger import PipelineLogger


BODY_EXCERPT_CHARS = 500
DOWNLOAD_CHUNK_BYTES = 64 * 1024


class Board(Protocol):
    """Board operations the pipelines rely on."""

    async def list_cards(self, list_id: str) -> list[Card]: ...

    async def get_comments(self, card_id: str) -> list[Comment]: ...

    async def get_attachments(self, card_id: str) -> list[Attachment]: ...

    async def move_card(self, card_id: str, list_id: str) -> None: ...

    async def add_comment(self, card_id: str, text: str) -> None: ...

    async def update_card(
        self,
        card_id: str,
        *,
        title: Optional[str] = None,
        description: Optional[str] = None,
    ) -> None: ...

    async def add_url_attachment(self, card_id: str, url: str, name: str) -> None: ...

    async def download_attachment(self, url: str, dest: Path) -> int: ...


def _is_trello_host(url: str) -> bool:
    host = (urlparse(url).hostname or "").lower()
    return host == "trello.com" or host.endswith(".trello.com")


def _is_retryable_status(status: int) -> bool:
    return status == 429 or status >= 500


class TrelloBoard:
    """
    Trello REST client.

    Usage:
        board = TrelloBoard(config.board)
        cards = await board.list_cards(config.board.columns.analysis_source)
    """

    def __init__(
        self,
        config: BoardConfig,
        *,
        api_key: Optional[str] = None,
        token: Optional[str] = None,
        session: Optional[requests.Session] = None,
        logger: Optional[PipelineLogger] = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            config: Board configuration.
            api_key: API key. Defaults to the configured environment variable.
            token: API token. Defaults to the configured environment variable.
            session: Optional requests session (tests inject a fake).
            logger: Optional logger for recording operations.

        Raises:
            ConfigError: If credentials are not given and not in the environment.
        """
        self.config = config
        self._api_key = api_key or config.get_api_key()
        self._token = token or config.get_token()
        self._session = session or requests.Session()
        self._logger = logger

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info"
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            self._logger.log(event_type, data, level=level)

    @property
    def _auth(self) -> dict[str, str]:
        return {"key": self._api_key, "token": self._token}

    def _request_sync(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> Any:
        """
        Make a request with retry and backoff.

        Raises:
            ApiError: On a non-retryable status or once retries are exhausted.
        """
        url = f"{self.config.base_url.rstrip('/')}{path}"
        query = {**(params or {}), **self._auth}
        attempts = max(1, self.config.max_retries)

        for attempt in range(attempts):
            last = attempt == attempts - 1
            try:
                response = self._session.request(
                    method,
                    url,
                    params=query,
                    json=json,
                    timeout=self.config.request_timeout_seconds,
                )
            except (requests.ConnectionError, requests.Timeout) as e:
                if last:
                    raise ApiError(f"Trello API request failed: {method} {path}: {e}")
                self._log("board_request_retry", {"path": path, "error": str(e)}, level="warn")
            else:
                if response.ok:
                    if not response.content:
                        return None
                    return response.json()

                body = response.text[:BODY_EXCERPT_CHARS]
                if last or not _is_retryable_status(response.status_code):
                    raise ApiError(
                        f"Trello API error {response.status_code}: {body}",
                        status=response.status_code,
                        body=body,
                    )
                self._log("board_request_retry", {
                    "path": path,
                    "status": response.status_code,
                }, level="warn")

            time.sleep(self.config.backoff_base_seconds * (2 ** attempt))

        raise ApiError("Trello API: max retries exceeded")

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        return await asyncio.to_thread(self._request_sync, method, path, **kwargs)

    # Reads

    async def get_board_lists(self) -> list[dict[str, Any]]:
        """Return ``[{"id", "name", ...}]`` for the configured board."""
        return await self._request("GET", f"/boards/{self.config.board_id}/lists") or []

    async def list_cards(self, list_id: str) -> list[Card]:
        data = await self._request("GET", f"/lists/{list_id}/cards") or []
        return [Card.from_dict(item) for item in data]

    async def get_comments(self, card_id: str) -> list[Comment]:
        data = await self._request(
            "GET", f"/cards/{card_id}/actions", params={"filter": "commentCard"}
        ) or []
        return [Comment.from_dict(item) for item in data]

    async def get_attachments(self, card_id: str) -> list[Attachment]:
        data = await self._request("GET", f"/cards/{card_id}/attachments") or []
        return [Attachment.from_dict(item) for item in data]

    # Writes

    async def move_card(self, card_id: str, list_id: str) -> None:
        await self._request("PUT", f"/cards/{card_id}", json={"idList": list_id})
        self._log("card_moved", {"card_id": card_id, "list_id": list_id})

    async def add_comment(self, card_id: str, text: str) -> None:
        await self._request("POST", f"/cards/{card_id}/actions/comments", json={"text": text})

    async def update_card(
        self,
        card_id: str,
        *,
        title: Optional[str] = None,
        description: Optional[str] = None,
    ) -> None:
        """Update the card name and/or description. No-op when both are None."""
        fields: dict[str, Any] = {}
        if title is not None:
            fields["name"] = title
        if description is not None:
            fields["desc"] = description
        if not fields:
            return
        await self._request("PUT", f"/cards/{card_id}", json=fields)

    async def add_url_attachment(self, card_id: str, url: str, name: str) -> None:
        await self._request("POST", f"/cards/{card_id}/attachments", json={"url": url, "name": name})

    # Downloads

    def _download_sync(self, url: str, dest: Path) -> int:
        limit = self.config.max_download_bytes
        # Trello-hosted files need auth; pre-signed storage URLs work without it
        headers = None
        if _is_trello_host(url):
            headers = {
                "Authorization": f'OAuth oauth_consumer_key="{self._api_key}", oauth_token="{self._token}"'
            }

        try:
            response = self._session.get(
                url,
                headers=headers,
                stream=True,
                timeout=self.config.request_timeout_seconds,
            )
        except requests.RequestException as e:
            raise ApiError(f"Download failed: {e}")

        with response:
            if not response.ok:
                raise ApiError(
                    f"Download failed: {response.status_code} {response.reason}",
                    status=response.status_code,
                )
            declared = int(response.headers.get("Content-Length") or 0)
            if declared > limit:
                raise ApiError(f"File too large: {declared} bytes (limit: {limit})")

            data = bytearray()
            try:
                for chunk in response.iter_content(DOWNLOAD_CHUNK_BYTES):
                    data.extend(chunk)
                    if len(data) > limit:
                        raise ApiError(f"File too large: more than {limit} bytes (limit: {limit})")
            except requests.RequestException as e:
                raise ApiError(f"Download failed: {e}")

        safe_write_bytes(dest, bytes(data), mode=0o644)
        return len(data)

    async def download_attachment(self, url: str, dest: Path) -> int:
        """
        Download an attachment to ``dest`` (mode 0644).

        Returns:
            Number of bytes written.

        Raises:
            ApiError: On HTTP failure or when the file exceeds the size ceiling.
            FileSystemError: If the file cannot be written.
        """
        return await asyncio.to_thread(self._download_sync, url, dest)
