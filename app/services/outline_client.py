"""
Outline Client — management API access for remote Outline VPN servers.

Only the two calls the metering engine needs are exposed: reading the
per-key transfer counters and setting a per-key data limit. Outline servers
present self-signed certificates, so TLS verification is replaced by pinning
the SHA-256 fingerprint recorded for the server.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Any, Protocol

import httpx

from app.config import settings as platform_settings
from app.models.server import Server

logger = logging.getLogger(__name__)


class OutlineApiError(Exception):
    """Raised for transport failures, timeouts and non-2xx responses."""

    def __init__(self, message: str, status_code: int = 0, response: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.response = response


class RemoteCounterClient(Protocol):
    def get_metrics(self) -> dict[str, int]: ...

    def set_access_key_data_limit(self, remote_key_id: str, limit_bytes: int) -> None: ...


def _normalize_fingerprint(value: str | None) -> str | None:
    if not value:
        return None
    return value.replace(":", "").strip().lower() or None


class OutlineClient:
    def __init__(self, api_url: str, cert_sha256: str | None = None, timeout: float | None = None):
        self.api_url = api_url.rstrip("/")
        self.cert_sha256 = _normalize_fingerprint(cert_sha256)
        self.timeout = timeout if timeout is not None else platform_settings.outline_timeout_seconds

    def _request(self, method: str, path: str, json_body: dict | None = None) -> Any:
        url = f"{self.api_url}{path}"
        try:
            with httpx.Client(timeout=self.timeout, verify=False) as client:
                resp = client.request(method, url, json=json_body)
                self._check_fingerprint(resp)
        except httpx.TimeoutException as e:
            raise OutlineApiError(f"Timed out contacting Outline server: {e}") from e
        except httpx.HTTPError as e:
            raise OutlineApiError(f"Failed to connect to Outline server: {e}") from e

        if resp.status_code == 204:
            return None
        if resp.status_code < 200 or resp.status_code >= 300:
            raise OutlineApiError(
                f"Outline API error: HTTP {resp.status_code}",
                status_code=resp.status_code,
                response=resp.text[:500],
            )
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise OutlineApiError("Failed to parse Outline response", response=resp.text[:500]) from e

    def _check_fingerprint(self, resp: httpx.Response) -> None:
        if not self.cert_sha256:
            return
        stream = resp.extensions.get("network_stream")
        ssl_object = stream.get_extra_info("ssl_object") if stream is not None else None
        if ssl_object is None:
            return
        der = ssl_object.getpeercert(binary_form=True)
        if not der:
            raise OutlineApiError("Outline server presented no certificate")
        actual = hashlib.sha256(der).hexdigest()
        if actual != self.cert_sha256:
            raise OutlineApiError("Outline server certificate fingerprint mismatch")

    def get_metrics(self) -> dict[str, int]:
        """Cumulative bytes per remote key id since the remote process started."""
        data = self._request("GET", "/metrics/transfer") or {}
        raw = data.get("bytesTransferredByUserId") or {}
        metrics: dict[str, int] = {}
        for remote_key_id, value in raw.items():
            try:
                metrics[str(remote_key_id)] = max(0, int(value))
            except (TypeError, ValueError):
                logger.debug("Ignoring non-numeric counter for remote key %s: %r", remote_key_id, value)
        return metrics

    def set_access_key_data_limit(self, remote_key_id: str, limit_bytes: int) -> None:
        self._request(
            "PUT",
            f"/access-keys/{remote_key_id}/data-limit",
            {"limit": {"bytes": int(limit_bytes)}},
        )


def get_outline_client(server: Server) -> OutlineClient:
    return OutlineClient(server.api_url, server.api_cert_sha256)
