import logging
from typing import Optional

import httpx

from scanshare.config import Settings
from scanshare.exceptions import RemoteSessionNotFoundError, SyncTransportError
from scanshare.models import (
    AddScansResponse,
    ScanDelta,
    ScanItem,
    SessionCreatedResponse,
    SessionDetail,
    SessionFlags,
)

logger = logging.getLogger(__name__)


class ScanShareClient:
    """HTTP client for the session API, used by the scanner side.

    Every failure is raised as a ``SyncError`` subclass: 404 on a short code
    becomes ``RemoteSessionNotFoundError``, anything else (network errors,
    timeouts, other non-2xx answers) becomes ``SyncTransportError``.
    """

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.base_url = settings.server_url.rstrip("/")
        self.timeout = settings.http_timeout
        self.headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        self._transport = transport

    async def _request(
        self,
        method: str,
        path: str,
        short_code: Optional[str] = None,
        json: Optional[dict] = None,
        allow_statuses: tuple[int, ...] = (),
    ) -> httpx.Response:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, headers=self.headers, json=json)
        except httpx.HTTPError as e:
            logger.warning("%s %s failed: %s", method, path, e)
            raise SyncTransportError(f"{method} {path} failed: {e}") from e

        if response.status_code in allow_statuses:
            return response
        if response.status_code == 404 and short_code is not None:
            raise RemoteSessionNotFoundError(short_code)
        if response.is_error:
            raise SyncTransportError(
                f"{method} {path} returned {response.status_code}",
                status_code=response.status_code,
            )
        return response

    async def create_session(
        self,
        name: str,
        type: Optional[str],
        scans: list[ScanItem],
        flags: Optional[SessionFlags] = None,
    ) -> SessionCreatedResponse:
        """Create the remote session with its first batch of scans."""
        payload = {
            "name": name,
            "type": type,
            "scans": [scan.model_dump(include=set(ScanItem.model_fields)) for scan in scans],
            **(flags or SessionFlags()).model_dump(),
        }
        response = await self._request("POST", "/sessions", json=payload)
        return SessionCreatedResponse.model_validate(response.json())

    async def add_scans(self, short_code: str, scans: list[ScanDelta]) -> AddScansResponse:
        payload = {"scans": [scan.model_dump(include=set(ScanDelta.model_fields)) for scan in scans]}
        response = await self._request("POST", f"/sessions/{short_code}/scans", short_code, json=payload)
        return AddScansResponse.model_validate(response.json())

    async def delete_scans(self, short_code: str, codes: list[str]) -> AddScansResponse:
        response = await self._request(
            "DELETE", f"/sessions/{short_code}/scans", short_code, json={"codes": codes}
        )
        return AddScansResponse.model_validate(response.json())

    async def get_session(self, short_code: str) -> SessionDetail:
        response = await self._request("GET", f"/sessions/{short_code}", short_code)
        return SessionDetail.model_validate(response.json())

    async def verify_access(self, short_code: str, access_code: str) -> Optional[SessionDetail]:
        """Viewer access check. Returns None when the access code is wrong."""
        response = await self._request(
            "POST",
            f"/viewer/{short_code}/verify",
            short_code,
            json={"accessCode": access_code},
            allow_statuses=(401,),
        )
        if response.status_code == 401:
            return None
        return SessionDetail.model_validate(response.json())

    def export_url(self, short_code: str, fields: Optional[list[str]] = None) -> str:
        url = f"{self.base_url}/sessions/{short_code}/export"
        if fields:
            url += "?fields=" + ",".join(fields)
        return url
