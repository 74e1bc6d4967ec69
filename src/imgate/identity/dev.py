"""Dev-only credential provider for the loopback transport."""

from __future__ import annotations

import hashlib
import os

from imgate.identity.signer import SessionCredentials


class DevCredentialProvider:
    """Issues local credentials without a signing endpoint.

    App identity comes from IMGATE_DEV_APP_IDENTITY (default "dev"); the
    signature is a digest of the uid and token so reruns are stable.
    """

    def __init__(self, app_identity: str | None = None) -> None:
        self._app_identity = app_identity or os.environ.get("IMGATE_DEV_APP_IDENTITY", "").strip() or "dev"

    async def fetch(self, identity: str, token: str) -> SessionCredentials:
        digest = hashlib.sha256(f"{identity}:{token}".encode()).hexdigest()
        return SessionCredentials(self._app_identity, f"dev-{digest[:32]}", identity)
