"""HTTP connector for REST-style ERP APIs."""

from connectors.http.client import HttpRemoteClient

__all__ = ["HttpRemoteClient"]
