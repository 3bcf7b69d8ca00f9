"""In-process stub adapters for the cart ports.

``InMemoryCartStorage`` implements ``CartStorage`` with a plain dict and
round-trips through the same serialization as the cache store, so tests
exercise the real load validation. The notifiers implement
``CartNotifier``.
"""

import logging
from typing import Dict, List, Tuple

from .domain import CartState, StoredCart
from .storage import deserialize, serialize

logger = logging.getLogger("cart")


class InMemoryCartStorage:
    """Dict-backed ``CartStorage``.

    ``raw`` is exposed so tests can plant corrupted payloads.
    """

    def __init__(self):
        self.raw: Dict[str, object] = {}

    def load(self, scope: str) -> StoredCart:
        return deserialize(self.raw.get(scope))

    def save(self, scope: str, state: CartState, expected_version: int, locked: bool = False) -> int:
        current = self.raw.get(scope)
        stored_version = current.get("version", 0) if isinstance(current, dict) else 0
        new_version = max(stored_version, expected_version) + 1
        self.raw[scope] = serialize(state, new_version, locked)
        return new_version


class CollectingNotifier:
    """Collects notifications so the API can return them as ``notices``."""

    def __init__(self):
        self.messages: List[Tuple[str, str]] = []

    def notify(self, title: str, description: str) -> None:
        self.messages.append((title, description))

    def as_notices(self) -> list[dict]:
        return [{"title": t, "description": d} for t, d in self.messages]


class LoggingNotifier:
    """Notifier for contexts with no user-facing channel."""

    def notify(self, title: str, description: str) -> None:
        logger.info("cart.notice", extra={"title": title, "description": description})
