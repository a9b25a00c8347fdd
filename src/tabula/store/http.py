# src/tabula/store/http.py
"""HTTP transport for a Sheets-style values API.

Endpoints (relative to ``{base_url}/{spreadsheet_id}``):

- get:          GET  values/{range}
- batch_get:    GET  values:batchGet?ranges=...&ranges=...
- append:       POST values/{range}:append?valueInputOption=RAW&insertDataOption=INSERT_ROWS
- batch_update: POST values:batchUpdate  {"valueInputOption": "RAW", "data": [...]}

Every HTTP status is returned as a TableResponse; classification (rate limit,
upstream failure) belongs to BackoffClient. Only failures with no response
at all (connect errors, timeouts) raise, as TransportFailure.
"""

from __future__ import annotations

import json
from typing import Any
from urllib.parse import quote

import httpx
import structlog

from tabula.contracts.errors import TransportFailure
from tabula.contracts.table import TableOperation, TableRequest, TableResponse
from tabula.core.config import TableSettings

logger = structlog.get_logger(__name__)


def _encode_range(a1_range: str) -> str:
    return quote(a1_range, safe="")


class HttpTableTransport:
    """TableTransport over httpx.

    httpx.Client is thread-safe; one instance serves every thread of the
    process and reuses connections.
    """

    def __init__(
        self,
        spreadsheet_id: str,
        *,
        base_url: str = "https://sheets.googleapis.com/v4/spreadsheets",
        access_token: str | None = None,
        timeout: float = 30.0,
        http_transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize transport.

        Args:
            spreadsheet_id: Remote spreadsheet identifier
            base_url: Values API base URL
            access_token: Optional bearer token
            timeout: Request timeout in seconds
            http_transport: Optional httpx transport (tests pass httpx.MockTransport)
        """
        if not spreadsheet_id:
            raise ValueError("spreadsheet_id is required")
        headers = {"Accept": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        # Absolute URLs throughout: "values:batchGet" would parse as a URL scheme if relative
        self._root = f"{base_url.rstrip('/')}/{spreadsheet_id}"
        self._client = httpx.Client(
            headers=headers,
            timeout=timeout,
            transport=http_transport,
        )

    @classmethod
    def from_settings(cls, settings: TableSettings, http_transport: httpx.BaseTransport | None = None) -> HttpTableTransport:
        return cls(
            settings.spreadsheet_id,
            base_url=settings.base_url,
            access_token=settings.access_token,
            timeout=settings.timeout_seconds,
            http_transport=http_transport,
        )

    def _dispatch(self, request: TableRequest) -> httpx.Response:
        match request.operation:
            case TableOperation.GET:
                return self._client.get(f"{self._root}/values/{_encode_range(request.ranges[0])}")
            case TableOperation.BATCH_GET:
                return self._client.get(f"{self._root}/values:batchGet", params=[("ranges", r) for r in request.ranges])
            case TableOperation.APPEND:
                return self._client.post(
                    f"{self._root}/values/{_encode_range(request.ranges[0])}:append",
                    params={"valueInputOption": "RAW", "insertDataOption": "INSERT_ROWS"},
                    json={"range": request.ranges[0], "majorDimension": "ROWS", "values": [list(row) for row in request.values[0]]},
                )
            case TableOperation.BATCH_UPDATE:
                data = [
                    {"range": range_, "majorDimension": "ROWS", "values": [list(row) for row in rows]}
                    for range_, rows in zip(request.ranges, request.values, strict=True)
                ]
                return self._client.post(f"{self._root}/values:batchUpdate", json={"valueInputOption": "RAW", "data": data})

    def send(self, request: TableRequest) -> TableResponse:
        try:
            response = self._dispatch(request)
        except httpx.TransportError as e:
            logger.debug("Transport error", operation=request.describe(), error=str(e))
            raise TransportFailure(f"{request.describe()}: {type(e).__name__}: {e}") from e

        body: dict[str, Any] = {}
        text = response.text
        if text:
            try:
                parsed = json.loads(text)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, dict):
                body = parsed
        return TableResponse(status_code=response.status_code, body=body, text=text)

    def close(self) -> None:
        """Close the underlying httpx client and release connections."""
        self._client.close()
