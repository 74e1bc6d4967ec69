"""Gateway domain exceptions."""

from __future__ import annotations

import re
from typing import Any

from imgate.core.constants import TRANSIENT_TIMEOUT_CODE

_TRANSIENT_TIMEOUT_RE = re.compile(r"请求超时|request timed? ?out", re.IGNORECASE)


class GatewayError(Exception):
    """Base for gateway domain errors."""

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, object] | None = None,
        original_error: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.details = details or {}
        self.original_error = original_error


class GatewayConfigurationError(GatewayError):
    """Config validation or load failure."""


class SignatureError(GatewayError):
    """Credential fetch failed; fatal to the current initialization attempt."""


class ReadyTimeoutError(GatewayError):
    """Backend never signaled ready within the bound."""


class NotReadyError(GatewayError):
    """Session cannot send right now (no login, degraded, or torn down)."""


class TransportSendError(GatewayError):
    """A single send failed; the session remains usable."""


class ForcedLogout(GatewayError):
    """Backend revoked the session; a fresh login is required."""


class DispatchFailed(GatewayError):
    """Every recipient candidate failed."""

    def __init__(self, message: str, *, attempts: list[Any], **kwargs: Any) -> None:
        super().__init__(message, code="dispatch_failed", **kwargs)
        self.attempts = attempts


def _error_code(exc: object) -> Any:
    code = getattr(exc, "code", None)
    if code is None:
        data = getattr(exc, "data", None)
        if isinstance(data, dict):
            code = data.get("code")
    return code


def is_transient_network_timeout(exc: object, code: Any = None) -> bool:
    """True for backend timeouts that are noise rather than failures."""
    if code is None:
        code = _error_code(exc)
    if code is not None and str(code) == str(TRANSIENT_TIMEOUT_CODE):
        return True
    return bool(_TRANSIENT_TIMEOUT_RE.search(str(exc or "")))
