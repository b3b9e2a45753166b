"""Contact store collaborator."""

from .store import ContactStore, SqlContactStore

__all__ = ["ContactStore", "SqlContactStore"]
