"""Backend sessions: lifecycle, send queue, event bridge."""

from imgate.session.bridge import EventBridge
from imgate.session.envelope import CommandEnvelope, build_envelope
from imgate.session.remote import RemoteSession, SessionState, close_quietly

__all__ = ["CommandEnvelope", "EventBridge", "RemoteSession", "SessionState", "build_envelope", "close_quietly"]
