"""Storage adapters, one module per backend family."""

from nosql_connector.adapters.base import Adapter, Backend, Capabilities, ConnectionProvider

__all__ = ["Adapter", "Backend", "Capabilities", "ConnectionProvider"]
