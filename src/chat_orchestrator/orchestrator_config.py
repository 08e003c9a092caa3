from dataclasses import dataclass

from chat_orchestrator.registry import ConflictPolicy


@dataclass
class OrchestratorConfig:
    model: str = "ggml-vicuna1.17b-q5_1.bin"
    endpoint: str = "llama"
    temperature: float = 0.2
    top_p: float | None = 0.95
    top_k: int | None = 40
    prompt_prefix: str | None = None
    user_label: str = "User"
    model_label: str = "Assistant"
    max_context_tokens: int = 2048
    max_response_tokens: int = 1024
    max_prompt_tokens: int | None = None
    snapshot_interval_seconds: float = 0.5
    request_timeout_seconds: float | None = None
    conflict_policy: ConflictPolicy = ConflictPolicy.REJECT
    title_conversations: bool = True

    def model_options(self) -> dict:
        """Per-conversation options a request may override."""
        return {
            "model": self.model,
            "temperature": self.temperature,
            "top_p": self.top_p,
            "top_k": self.top_k,
            "prompt_prefix": self.prompt_prefix,
            "model_label": self.model_label,
        }
