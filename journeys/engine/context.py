"""Contact snapshot: the read-only view conditions and templates are evaluated against."""

from __future__ import annotations

import re
from typing import Any, Mapping

MISSING = object()

_ROOTS = ("contact", "trigger")


class ContactSnapshot:
    """Immutable view of a contact's attributes, tags, fields and trigger event.

    Paths are dotted (``contact.fields.plan``). A path whose first segment is
    not a known root resolves against ``contact``, so ``tags`` and
    ``contact.tags`` are the same attribute.
    """

    def __init__(self, contact: Mapping[str, Any] | None = None, trigger: Mapping[str, Any] | None = None):
        contact_data = dict(contact or {})
        contact_data["tags"] = sorted(set(contact_data.get("tags") or ()))
        contact_data["fields"] = dict(contact_data.get("fields") or {})
        self._data: dict[str, Any] = {"contact": contact_data, "trigger": dict(trigger or {})}

    @property
    def contact_id(self) -> Any:
        return self._data["contact"].get("id")

    @property
    def tags(self) -> list[str]:
        return list(self._data["contact"]["tags"])

    def lookup(self, path: str) -> Any:
        """Resolve a dotted path; returns ``MISSING`` when any segment is absent."""
        parts = [p for p in path.split(".") if p]
        if not parts:
            return MISSING
        if parts[0] not in _ROOTS:
            parts.insert(0, "contact")
        current: Any = self._data
        for part in parts:
            if isinstance(current, Mapping) and part in current:
                current = current[part]
            else:
                return MISSING
        return current

    def get(self, path: str, default: Any = None) -> Any:
        value = self.lookup(path)
        return default if value is MISSING or value is None else value

    def resolve_template(self, text: str) -> str:
        """Replace {{path}} placeholders with snapshot values."""
        def replacer(match):
            value = self.get(match.group(1).strip())
            return str(value) if value is not None else match.group(0)

        return re.sub(r"\{\{(.+?)\}\}", replacer, text)
