"""Per-invocation metadata attached to an action result."""

from typing import Any, Dict


class ActionMetadataStore:
    """Key/value scratchpad owned by one action invocation.

    Created fresh for every action_triggered request and serialized
    once into the response as ``meta``. Last write wins.
    """

    def __init__(self):
        self._entries: Dict[str, Any] = {}

    def set(self, key: str, value: Any) -> None:
        self._entries[key] = value

    def set_cost(self, cost: float) -> None:
        """Record the billable cost of the action."""
        self.set("cost", cost)

    def to_json(self) -> Dict[str, Any]:
        """Snapshot of the entries (a copy, later writes do not leak in)."""
        return dict(self._entries)

    def __len__(self) -> int:
        return len(self._entries)
