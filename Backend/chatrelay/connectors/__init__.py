import importlib

from chatrelay.connectors.base import ClientFactory, ConnectorError, MessagingClient


def load_client_factory(path: str) -> ClientFactory:
    """Resolve a ``package.module:attribute`` path to a client factory."""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Client factory must look like 'module:attribute', got {path!r}")
    module = importlib.import_module(module_name)
    try:
        factory = getattr(module, attr)
    except AttributeError:
        raise ValueError(f"{module_name} has no attribute {attr!r}") from None
    if not callable(factory):
        raise ValueError(f"{path} is not callable")
    return factory


__all__ = [
    "ClientFactory",
    "ConnectorError",
    "MessagingClient",
    "load_client_factory",
]
