"""Credential signing client: exchanges uid + auth token for transport credentials."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from loguru import logger
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from imgate.core.errors import SignatureError

DEFAULT_RETRY = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    retry=retry_if_exception_type(
        (
            httpx.ConnectError,
            httpx.ConnectTimeout,
            httpx.ReadTimeout,
            httpx.WriteTimeout,
            httpx.PoolTimeout,
            httpx.ReadError,
            httpx.WriteError,
        )
    ),
    reraise=True,
)

_APP_ID_KEYS = ("appid", "appId", "SDKAppID", "sdkAppId", "appIdentity")
_SIGNATURE_KEYS = ("sign", "userSig", "usersig", "sessionSignature")
_USER_ID_KEYS = ("userid", "userId", "uid", "userID", "remoteUserId")


@dataclass(frozen=True)
class SessionCredentials:
    """Transport credentials for one backend login."""

    app_identity: str
    session_signature: str
    remote_user_id: str


class CredentialProvider(Protocol):
    async def fetch(self, identity: str, token: str) -> SessionCredentials: ...


def _find_value(data: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


def parse_credentials(payload: Any, identity: str) -> SessionCredentials:
    """Extract credentials from a signing response body; SignatureError if malformed."""
    if not isinstance(payload, dict):
        raise SignatureError("signing response is not an object", code="malformed_response")
    if str(payload.get("code")) != "1":
        raise SignatureError(
            f"signing rejected: {payload.get('msg') or payload.get('message') or payload.get('code')}",
            code="signing_rejected",
            details={"response": payload},
        )
    data = payload.get("data")
    if not isinstance(data, dict):
        raise SignatureError("signing response has no data object", code="malformed_response")

    app_identity = str(_find_value(data, _APP_ID_KEYS) or "").strip()
    signature = str(_find_value(data, _SIGNATURE_KEYS) or "").strip()
    if not app_identity or not signature:
        raise SignatureError(
            "signing response missing app identity or signature",
            code="missing_fields",
            details={"keys": sorted(data)},
        )
    remote_user_id = str(_find_value(data, _USER_ID_KEYS) or identity)
    return SessionCredentials(app_identity, signature, remote_user_id)


class SigningClient:
    """Async client for the credential signing endpoint. Uses tenacity for retries."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    @DEFAULT_RETRY
    async def _post_sign(self, identity: str, token: str) -> Any:
        url = f"{self._base_url}/user/game_sign"
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            resp = await client.post(
                url,
                json={"uid": identity, "token": token},
                headers={"Accept": "application/json"},
            )
            resp.raise_for_status()
            return resp.json()

    async def fetch(self, identity: str, token: str) -> SessionCredentials:
        try:
            payload = await self._post_sign(identity, token)
        except httpx.HTTPStatusError as exc:
            raise SignatureError(
                f"signing http {exc.response.status_code}",
                code="http_status",
                details={"status": exc.response.status_code},
                original_error=exc,
            ) from exc
        except httpx.HTTPError as exc:
            raise SignatureError(
                f"signing request failed: {exc}",
                code="transport_error",
                original_error=exc,
            ) from exc
        except ValueError as exc:
            raise SignatureError(
                "signing response is not JSON",
                code="malformed_response",
                original_error=exc,
            ) from exc
        creds = parse_credentials(payload, identity)
        logger.debug("Signed credentials for {} (app {})", identity, creds.app_identity)
        return creds
