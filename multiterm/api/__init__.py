"""REST clients used by the workspace."""

from .catalog import CatalogError, ConnectionCatalog, HttpConnectionCatalog

__all__ = ["CatalogError", "ConnectionCatalog", "HttpConnectionCatalog"]
