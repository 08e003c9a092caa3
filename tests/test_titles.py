import asyncio
import unittest

from chat_orchestrator.titles import TitleGenerator, clean_title
from tests.support import ScriptedProvider


class CleanTitleTests(unittest.TestCase):
    def test_strips_label_quotes_and_period(self) -> None:
        self.assertEqual("Greeting the assistant", clean_title('Title: "Greeting the assistant."'))

    def test_collapses_whitespace(self) -> None:
        self.assertEqual("Two words", clean_title("  Two\n   words "))

    def test_long_titles_are_truncated(self) -> None:
        title = clean_title("word " * 40)
        self.assertEqual(80, len(title))
        self.assertTrue(title.endswith("..."))


class TitleGeneratorTests(unittest.TestCase):
    def test_asks_provider_with_zero_temperature(self) -> None:
        provider = ScriptedProvider(title="'Saying hello'")
        generator = TitleGenerator(provider, "test-model")
        title = asyncio.run(generator.generate("Hello", "Hi there"))

        self.assertEqual("Saying hello", title)
        self.assertEqual(1, len(provider.title_calls))
        call = provider.title_calls[0]
        self.assertEqual("test-model", call["model"])
        self.assertEqual(0, call["temperature"])
        self.assertIn("User: Hello", call["messages"][0]["content"])
        self.assertIn("Assistant: Hi there", call["messages"][0]["content"])


if __name__ == "__main__":
    unittest.main()
