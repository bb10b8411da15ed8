"""
Content items extracted from X API search payloads.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional


@dataclass(frozen=True)
class Item:
    """One tweet. Only `id` is used for deduplication; the rest is payload."""
    id: int
    author: Optional[str]
    text: str
    timestamp: Optional[str]
    payload: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "author": self.author,
            "text": self.text,
            "created_at": self.timestamp,
            "url": f"https://x.com/{self.author or 'i'}/status/{self.id}",
        }


def parse_items(payload: Any) -> List[Item]:
    """Extract items from a `/tweets/search/recent` style payload.

    Authors are resolved from `includes.users` when present. Entries
    without a numeric id are skipped.
    """
    if not isinstance(payload, Mapping):
        return []

    users = {
        u.get("id"): u.get("username")
        for u in (payload.get("includes") or {}).get("users", [])
        if isinstance(u, Mapping)
    }

    items = []
    for raw in payload.get("data") or []:
        if not isinstance(raw, Mapping):
            continue
        try:
            item_id = int(raw.get("id"))
        except (TypeError, ValueError):
            continue
        author_id = raw.get("author_id")
        items.append(Item(
            id=item_id,
            author=users.get(author_id, author_id),
            text=raw.get("text", ""),
            timestamp=raw.get("created_at"),
            payload=dict(raw)
        ))
    return items
