import asyncio

from chat_orchestrator.models import ROOT_PARENT_ID, Message
from tests.storage.base import ConversationStoreTestCase


def _message(message_id: str, parent: str = ROOT_PARENT_ID, text: str = "hi", **flags) -> Message:
    return Message(
        message_id=message_id,
        parent_message_id=parent,
        conversation_id="c1",
        sender="User",
        text=text,
        is_created_by_user=True,
        **flags,
    )


class ConversationStoreMessageTests(ConversationStoreTestCase):
    def test_save_and_load_in_insert_order(self) -> None:
        async def scenario():
            await self._store.save_message(_message("m1", text="first"))
            await self._store.save_message(_message("m2", parent="m1", text="second"))
            return await self._store.load_messages("c1")

        messages = asyncio.run(scenario())
        self.assertEqual(["m1", "m2"], [m.message_id for m in messages])
        self.assertEqual("m1", messages[1].parent_message_id)
        self.assertTrue(messages[0].is_created_by_user)
        self.assertTrue(messages[0].created_at)

    def test_upsert_replaces_text_and_flags_but_keeps_created_at(self) -> None:
        async def scenario():
            await self._store.save_message(_message("m1", text="Hel", unfinished=True))
            first = (await self._store.load_messages("c1"))[0]
            await self._store.save_message(_message("m1", text="Hello", cancelled=True))
            return first, await self._store.load_messages("c1")

        first, messages = asyncio.run(scenario())
        self.assertEqual(1, len(messages))
        self.assertEqual("Hello", messages[0].text)
        self.assertFalse(messages[0].unfinished)
        self.assertTrue(messages[0].cancelled)
        self.assertEqual(first.created_at, messages[0].created_at)

    def test_other_conversations_are_not_loaded(self) -> None:
        async def scenario():
            await self._store.save_message(_message("m1"))
            return await self._store.load_messages("elsewhere")

        self.assertEqual([], asyncio.run(scenario()))


class ConversationStoreConversationTests(ConversationStoreTestCase):
    def test_missing_conversation_has_empty_title(self) -> None:
        self.assertEqual("", asyncio.run(self._store.load_conversation_title(None, "nope")))
        self.assertIsNone(asyncio.run(self._store.load_conversation(None, "nope")))

    def test_partial_saves_merge(self) -> None:
        async def scenario():
            await self._store.save_conversation(
                "u1",
                {"conversation_id": "c1", "endpoint": "llama", "model_options": {"model": "m", "temperature": 0.2}},
            )
            await self._store.save_conversation(None, {"conversation_id": "c1", "title": "Greeting"})
            await self._store.save_conversation(None, {"conversation_id": "c1", "model_options": {"temperature": 0.7}})
            return await self._store.load_conversation("u1", "c1")

        conversation = asyncio.run(scenario())
        self.assertEqual("Greeting", conversation.title)
        self.assertEqual("llama", conversation.endpoint)
        self.assertEqual("u1", conversation.user_id)
        self.assertEqual({"model": "m", "temperature": 0.7}, conversation.model_options)

    def test_conversation_is_scoped_to_its_user(self) -> None:
        async def scenario():
            await self._store.save_conversation("u1", {"conversation_id": "c1", "title": "Mine"})
            return (
                await self._store.load_conversation_title("u2", "c1"),
                await self._store.load_conversation_title("u1", "c1"),
            )

        other, own = asyncio.run(scenario())
        self.assertEqual("", other)
        self.assertEqual("Mine", own)

    def test_conversation_id_is_required(self) -> None:
        with self.assertRaises(ValueError):
            asyncio.run(self._store.save_conversation(None, {"title": "x"}))
