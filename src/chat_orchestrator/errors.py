class OrchestratorError(Exception):
    """Base class for every error raised by chat_orchestrator."""


class ConfigurationError(OrchestratorError):
    """Invalid settings detected while constructing a component. Never retried."""


class TransportError(OrchestratorError):
    """The model backend could not be reached or returned an unusable reply."""


class BudgetOverflowError(OrchestratorError):
    """A single message does not fit inside the prompt token budget."""


class SessionConflictError(OrchestratorError):
    """Another request is already in flight under the same abort key."""


class AbortKeyNotFoundError(OrchestratorError):
    """No in-flight request is registered under the given abort key."""


class EmptyPromptError(OrchestratorError):
    pass


class SessionStateError(OrchestratorError):
    pass
