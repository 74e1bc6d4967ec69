"""Backend transports and factory loading."""

from __future__ import annotations

import importlib

from imgate.core.errors import GatewayConfigurationError
from imgate.transport.base import EVENT_KINDS, Transport, TransportFactory
from imgate.transport.loopback import LoopbackTransport

__all__ = ["EVENT_KINDS", "LoopbackTransport", "Transport", "TransportFactory", "load_transport_factory"]


def load_transport_factory(factory_path: str) -> TransportFactory:
    """Resolve 'loopback' or a 'module:attribute' callable taking the app identity."""
    if factory_path == "loopback":
        return LoopbackTransport
    module_name, _, attr = factory_path.partition(":")
    if not module_name or not attr:
        raise GatewayConfigurationError(
            f"invalid transport factory {factory_path!r}",
            code="invalid_transport_factory",
        )
    try:
        module = importlib.import_module(module_name)
        factory = getattr(module, attr)
    except (ImportError, AttributeError) as exc:
        raise GatewayConfigurationError(
            f"cannot load transport factory {factory_path!r}: {exc}",
            code="invalid_transport_factory",
            original_error=exc,
        ) from exc
    if not callable(factory):
        raise GatewayConfigurationError(
            f"transport factory {factory_path!r} is not callable",
            code="invalid_transport_factory",
        )
    return factory
