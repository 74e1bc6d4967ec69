"""Command dispatch: ordered recipient candidates with fallback."""

from __future__ import annotations

import secrets
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable

from loguru import logger

from imgate.core.constants import DEFAULT_IDENTITY_PREFIX
from imgate.core.errors import DispatchFailed, GatewayError
from imgate.identity.ids import normalize_uid
from imgate.session.envelope import CommandEnvelope
from imgate.session.remote import RemoteSession


@dataclass
class DispatchAttempt:
    """One delivery attempt to one candidate."""

    recipient: str
    ok: bool
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class DispatchResult:
    recipient: str
    trace_id: str
    attempts: list[DispatchAttempt] = field(default_factory=list)


def new_trace_id() -> str:
    return f"trace_{secrets.token_hex(6)}"


def build_candidates(values: Iterable[Any], *, prefix: str = DEFAULT_IDENTITY_PREFIX) -> list[str]:
    """Normalise, drop empties, de-duplicate keeping first occurrence."""
    seen: set[str] = set()
    out: list[str] = []
    for value in values:
        uid = normalize_uid(value, prefix)
        if uid and uid not in seen:
            seen.add(uid)
            out.append(uid)
    return out


class CommandDispatcher:
    """Tries recipient candidates strictly in order until one send succeeds.

    The backend's login identity and its deliverable recipient identity do not
    always follow the same addressing convention, so every plausible
    candidate is tried and each attempt is recorded.
    """

    def __init__(
        self,
        *,
        fallback_target: str | None = None,
        identity_prefix: str = DEFAULT_IDENTITY_PREFIX,
    ) -> None:
        self.fallback_target = fallback_target
        self._prefix = identity_prefix

    def candidates_for(
        self,
        session: RemoteSession,
        *,
        recipient_override: str | None = None,
        caller_identity: str | None = None,
    ) -> list[str]:
        """Override, configured fallback, backend identity, caller identity."""
        return build_candidates(
            [
                recipient_override,
                self.fallback_target,
                session.remote_user_id,
                caller_identity if caller_identity is not None else session.uid,
            ],
            prefix=self._prefix,
        )

    async def dispatch(
        self,
        session: RemoteSession,
        envelope: CommandEnvelope,
        *,
        recipient_override: str | None = None,
        caller_identity: str | None = None,
        trace_id: str | None = None,
    ) -> DispatchResult:
        trace_id = trace_id or new_trace_id()
        candidates = self.candidates_for(
            session,
            recipient_override=recipient_override,
            caller_identity=caller_identity,
        )
        return await self.deliver(session, envelope, candidates, trace_id=trace_id)

    async def deliver(
        self,
        session: RemoteSession,
        envelope: CommandEnvelope,
        candidates: list[str],
        *,
        trace_id: str | None = None,
    ) -> DispatchResult:
        """Attempt each candidate once, in order; raise DispatchFailed if none succeeds."""
        trace_id = trace_id or new_trace_id()
        attempts: list[DispatchAttempt] = []
        logger.info("[{}] dispatch {} -> {}", session.session_id, trace_id, candidates)
        for recipient in candidates:
            try:
                await session.send(envelope, recipient)
            except GatewayError as exc:
                attempts.append(DispatchAttempt(recipient, False, str(exc)))
                logger.debug("[{}] {} to {} failed: {}", session.session_id, trace_id, recipient, exc)
                continue
            attempts.append(DispatchAttempt(recipient, True))
            logger.info("[{}] {} delivered to {}", session.session_id, trace_id, recipient)
            return DispatchResult(recipient=recipient, trace_id=trace_id, attempts=attempts)

        message = "no recipient candidates" if not candidates else "all recipient candidates failed"
        logger.warning("[{}] {} {}", session.session_id, trace_id, message)
        raise DispatchFailed(
            message,
            attempts=attempts,
            details={"trace_id": trace_id, "candidates": candidates},
        )
