from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from loguru import logger

from chat_orchestrator.errors import ConfigurationError
from chat_orchestrator.models import ChatMessage
from chat_orchestrator.tokens import REPLY_PRIMER_TOKENS, TOKENS_PER_MESSAGE, TokenCounter


@dataclass
class TokenLimits:
    """Context window split between prompt and response.

    ``max_prompt_tokens`` defaults to whatever the response leaves free; an
    explicit value must still fit next to the response.
    """

    max_context_tokens: int = 2048
    max_response_tokens: int = 1024
    max_prompt_tokens: int | None = None

    def __post_init__(self) -> None:
        if self.max_context_tokens <= 0 or self.max_response_tokens <= 0:
            raise ConfigurationError(
                f"maxContextTokens ({self.max_context_tokens}) and maxResponseTokens "
                f"({self.max_response_tokens}) must be positive"
            )
        if not self.max_prompt_tokens:
            self.max_prompt_tokens = self.max_context_tokens - self.max_response_tokens
        total = self.max_prompt_tokens + self.max_response_tokens
        if self.max_prompt_tokens <= 0 or total > self.max_context_tokens:
            raise ConfigurationError(
                f"maxPromptTokens + maxResponseTokens ({self.max_prompt_tokens} + "
                f"{self.max_response_tokens} = {total}) must be less than or equal to "
                f"maxContextTokens ({self.max_context_tokens})"
            )


@dataclass(frozen=True)
class BudgetResult:
    messages: list[ChatMessage]
    prompt_tokens: int
    dropped: int
    overflow: bool = False


class ContextBudgeter:
    def __init__(self, counter: TokenCounter):
        self._counter = counter

    def message_cost(self, message: ChatMessage) -> int:
        return self._counter.count_message(message.to_dict()) + TOKENS_PER_MESSAGE

    def budget(self, history: Sequence[ChatMessage], max_prompt_tokens: int) -> BudgetResult:
        """Keep the longest run of newest messages that fits ``max_prompt_tokens``.

        When even the newest message does not fit it is returned alone with
        ``overflow`` set; the caller decides how to surface that.
        """
        if not history:
            return BudgetResult(messages=[], prompt_tokens=REPLY_PRIMER_TOKENS, dropped=0)

        total = REPLY_PRIMER_TOKENS
        keep_from = len(history)
        for index in range(len(history) - 1, -1, -1):
            cost = self.message_cost(history[index])
            if total + cost > max_prompt_tokens:
                break
            total += cost
            keep_from = index

        if keep_from == len(history):
            newest_cost = REPLY_PRIMER_TOKENS + self.message_cost(history[-1])
            logger.warning(
                f"Context budget: newest message needs {newest_cost:,} tokens, "
                f"budget is {max_prompt_tokens:,}"
            )
            return BudgetResult(
                messages=[history[-1]],
                prompt_tokens=newest_cost,
                dropped=len(history) - 1,
                overflow=True,
            )

        if keep_from:
            logger.info(
                f"Context budget: dropped {keep_from} oldest message(s), "
                f"prompt uses {total:,}/{max_prompt_tokens:,} tokens"
            )
        return BudgetResult(messages=list(history[keep_from:]), prompt_tokens=total, dropped=keep_from)
