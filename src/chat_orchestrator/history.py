from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass

from loguru import logger

from chat_orchestrator.models import ROOT_PARENT_ID, HistoryEntry, Message


@dataclass(frozen=True)
class ResolutionAnomaly:
    """Corrupt parent links found while walking a conversation.

    ``kind`` is ``"cycle"`` when a message id repeats and ``"dangling_parent"``
    when a parent id points at a message that is not stored.
    """

    kind: str
    message_id: str
    depth: int

    def describe(self) -> str:
        if self.kind == "cycle":
            return f"parent cycle at message {self.message_id} after {self.depth} message(s)"
        return f"missing parent message {self.message_id} after {self.depth} message(s)"


class HistoryResolver:
    def __init__(self, *, on_anomaly: Callable[[ResolutionAnomaly], None] | None = None):
        self._on_anomaly = on_anomaly

    def resolve(self, messages: Iterable[Message], start_parent_id: str | None) -> list[HistoryEntry]:
        """Return the ancestors of ``start_parent_id`` (inclusive), root first.

        An unknown start id or the root sentinel yields an empty history. Cycles
        and gaps stop the walk and keep the part of the chain already collected.
        """
        if not start_parent_id or start_parent_id == ROOT_PARENT_ID:
            return []

        by_id = {m.message_id: m for m in messages}
        chain: list[Message] = []
        visited: set[str] = set()
        current: str | None = start_parent_id

        while current and current != ROOT_PARENT_ID:
            if current in visited:
                self._report(ResolutionAnomaly("cycle", current, len(chain)))
                break
            message = by_id.get(current)
            if message is None:
                if chain:
                    self._report(ResolutionAnomaly("dangling_parent", current, len(chain)))
                break
            visited.add(current)
            chain.append(message)
            current = message.parent_message_id

        chain.reverse()
        return [HistoryEntry(is_created_by_user=m.is_created_by_user, content=m.text) for m in chain]

    def _report(self, anomaly: ResolutionAnomaly) -> None:
        logger.warning(f"History resolution degraded: {anomaly.describe()}")
        if self._on_anomaly is not None:
            self._on_anomaly(anomaly)
