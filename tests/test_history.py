import unittest

from chat_orchestrator.history import HistoryResolver, ResolutionAnomaly
from chat_orchestrator.models import ROOT_PARENT_ID, HistoryEntry, Message


def _message(message_id: str, parent: str, text: str, by_user: bool) -> Message:
    return Message(
        message_id=message_id,
        parent_message_id=parent,
        conversation_id="c1",
        sender="User" if by_user else "Assistant",
        text=text,
        is_created_by_user=by_user,
    )


class HistoryResolverTests(unittest.TestCase):
    def setUp(self) -> None:
        self.anomalies: list[ResolutionAnomaly] = []
        self.resolver = HistoryResolver(on_anomaly=self.anomalies.append)

    def test_walks_parent_chain_root_first(self) -> None:
        messages = [
            _message("m3", "m2", "third", True),
            _message("m1", ROOT_PARENT_ID, "first", True),
            _message("m2", "m1", "second", False),
            _message("other", "m1", "sibling branch", False),
        ]
        history = self.resolver.resolve(messages, "m3")
        self.assertEqual(
            [
                HistoryEntry(True, "first"),
                HistoryEntry(False, "second"),
                HistoryEntry(True, "third"),
            ],
            history,
        )
        self.assertEqual([], self.anomalies)

    def test_root_sentinel_and_missing_start_give_empty_history(self) -> None:
        messages = [_message("m1", ROOT_PARENT_ID, "first", True)]
        self.assertEqual([], self.resolver.resolve(messages, ROOT_PARENT_ID))
        self.assertEqual([], self.resolver.resolve(messages, None))
        self.assertEqual([], self.resolver.resolve(messages, "unknown"))
        self.assertEqual([], self.anomalies)

    def test_cycle_stops_walk_and_is_reported(self) -> None:
        messages = [
            _message("a", "b", "A", True),
            _message("b", "a", "B", False),
        ]
        history = self.resolver.resolve(messages, "a")
        self.assertEqual([HistoryEntry(False, "B"), HistoryEntry(True, "A")], history)
        self.assertEqual(1, len(self.anomalies))
        self.assertEqual("cycle", self.anomalies[0].kind)
        self.assertEqual("a", self.anomalies[0].message_id)

    def test_self_parent_is_a_cycle(self) -> None:
        history = self.resolver.resolve([_message("a", "a", "A", True)], "a")
        self.assertEqual([HistoryEntry(True, "A")], history)
        self.assertEqual(["cycle"], [a.kind for a in self.anomalies])

    def test_dangling_parent_keeps_collected_chain(self) -> None:
        messages = [
            _message("m3", "m2", "third", True),
            _message("m2", "gone", "second", False),
        ]
        history = self.resolver.resolve(messages, "m3")
        self.assertEqual([HistoryEntry(False, "second"), HistoryEntry(True, "third")], history)
        self.assertEqual("dangling_parent", self.anomalies[0].kind)
        self.assertEqual(2, self.anomalies[0].depth)
        self.assertIn("missing parent", self.anomalies[0].describe())


if __name__ == "__main__":
    unittest.main()
