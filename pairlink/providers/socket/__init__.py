from __future__ import annotations

from importlib import import_module

from pairlink.core.config import Settings, get_settings
from pairlink.providers.socket.base import ProtocolSocket, SocketEvent, SocketEventKind, SocketFactory
from pairlink.providers.socket.fake import FakeProtocolSocket, FakeSocketFactory


def get_socket_factory(settings: Settings | None = None) -> SocketFactory:
    settings = settings or get_settings()
    provider = (settings.socket_provider or "fake").strip()

    if provider.lower() == "fake":
        return FakeSocketFactory(autopilot=True)
    # Third-party transports plug in as "package.module:factory".
    module_name, _, attr = provider.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Unsupported socket provider: {provider}")
    factory = getattr(import_module(module_name), attr)
    if not callable(factory):
        raise ValueError(f"Socket provider {provider} is not callable")
    return factory


__all__ = [
    "FakeProtocolSocket",
    "FakeSocketFactory",
    "ProtocolSocket",
    "SocketEvent",
    "SocketEventKind",
    "SocketFactory",
    "get_socket_factory",
]
