"""SQLite persistence and the provider directory."""

from marketplace.storage.database import Database
from marketplace.storage.directory import ProviderDirectory

__all__ = ["Database", "ProviderDirectory"]
