import unittest

from chat_orchestrator.errors import ConfigurationError
from chat_orchestrator.models import Role
from chat_orchestrator.tokens import REPLY_PRIMER_TOKENS, TOKENS_PER_MESSAGE, TokenCounter
from tests.support import WhitespaceEncoding, whitespace_counter


class TokenCounterTests(unittest.TestCase):
    def test_count_uses_encoding(self) -> None:
        counter = whitespace_counter()
        self.assertEqual(3, counter.count("one two three"))
        self.assertEqual(0, counter.count(""))

    def test_name_field_costs_one_token_less(self) -> None:
        counter = whitespace_counter()
        plain = counter.count_message({"role": "user", "content": "hi there"})
        named = counter.count_message({"role": "user", "name": "bob", "content": "hi there"})
        self.assertEqual(3, plain)
        self.assertEqual(plain, named)

    def test_enum_values_are_counted_as_their_text(self) -> None:
        counter = whitespace_counter()
        self.assertEqual(
            counter.count_message({"role": "user", "content": "x"}),
            counter.count_message({"role": Role.USER, "content": "x"}),
        )

    def test_count_messages_adds_overhead_and_primer(self) -> None:
        counter = whitespace_counter()
        messages = [
            {"role": "user", "content": "a b"},
            {"role": "assistant", "content": "c"},
        ]
        expected = (3 + TOKENS_PER_MESSAGE) + (2 + TOKENS_PER_MESSAGE) + REPLY_PRIMER_TOKENS
        self.assertEqual(expected, counter.count_messages(messages))

    def test_count_messages_ignores_order(self) -> None:
        counter = whitespace_counter()
        messages = [
            {"role": "system", "content": "be brief"},
            {"role": "user", "content": "what is the time"},
            {"role": "assistant", "content": "noon"},
        ]
        self.assertEqual(counter.count_messages(messages), counter.count_messages(reversed(messages)))

    def test_unknown_encoding_is_a_configuration_error(self) -> None:
        def factory(name: str):
            raise ValueError(f"Unknown encoding {name}")

        with self.assertRaises(ConfigurationError):
            TokenCounter("no-such-encoding", encoding_factory=factory)

    def test_encoding_is_built_once_per_name(self) -> None:
        calls: list[str] = []

        def factory(name: str):
            calls.append(name)
            return WhitespaceEncoding()

        first = TokenCounter("test-cached-encoding", encoding_factory=factory)
        second = TokenCounter("test-cached-encoding", encoding_factory=factory)
        self.assertEqual(["test-cached-encoding"], calls)
        self.assertEqual(first.count("a b"), second.count("a b"))
        self.assertEqual("test-cached-encoding", second.encoding_name)


if __name__ == "__main__":
    unittest.main()
