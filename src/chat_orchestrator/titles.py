from __future__ import annotations

from chat_orchestrator.provider import CompletionProvider

_TITLE_PROMPT = """\
Write a short title (at most 7 words) for the conversation below.
Reply with the title only: no quotes, no punctuation at the end.

User: {user_text}
Assistant: {response_text}
"""

_MAX_EXCERPT_CHARS = 1_000
_MAX_TITLE_CHARS = 80


def _excerpt(text: str) -> str:
    if len(text) <= _MAX_EXCERPT_CHARS:
        return text
    return text[:_MAX_EXCERPT_CHARS] + "..."


def clean_title(raw: str) -> str:
    title = " ".join(raw.split())
    if title.lower().startswith("title:"):
        title = title[len("title:"):].strip()
    title = title.strip("\"'` ").rstrip(".")
    if len(title) > _MAX_TITLE_CHARS:
        title = title[: _MAX_TITLE_CHARS - 3].rstrip() + "..."
    return title


class TitleGenerator:
    def __init__(self, provider: CompletionProvider, model: str, *, max_tokens: int = 32):
        self._provider = provider
        self._model = model
        self._max_tokens = max_tokens

    async def generate(self, user_text: str, response_text: str) -> str:
        prompt = _TITLE_PROMPT.format(
            user_text=_excerpt(user_text),
            response_text=_excerpt(response_text),
        )
        raw = await self._provider.create_message(
            self._model,
            self._max_tokens,
            0,
            [{"role": "user", "content": prompt}],
        )
        return clean_title(raw)
