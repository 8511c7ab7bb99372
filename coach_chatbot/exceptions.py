"""Error taxonomy for the chat orchestrator.

Errors raised before a stream opens are turned into JSON error responses by the
routes; errors after that point are reported as a terminal ``error`` event.
"""


class ChatbotError(Exception):
    """Base class for all orchestrator errors."""

    code = "chatbot_error"
    status_code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message or self.__class__.__name__


class ConfigurationError(ChatbotError):
    """Provider credentials or model configuration are missing."""

    code = "configuration_error"
    status_code = 500


class AccessError(ChatbotError):
    """No tenant context, or the resource is not owned by the caller."""

    code = "access_denied"
    status_code = 403

    def __init__(self, message: str = "", status_code: int = 403) -> None:
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(ChatbotError):
    """The resource does not exist for this tenant."""

    code = "not_found"
    status_code = 404


class ConflictError(ChatbotError):
    """The write would duplicate an existing logical record."""

    code = "conflict"
    status_code = 409


class ProviderError(ChatbotError):
    """The primary model call failed; fatal to the turn."""

    code = "provider_error"
    status_code = 502


class ToolExecutionError(ChatbotError):
    """A nested sub-generation failed; the turn continues."""

    code = "tool_execution_error"


class ContextAssemblyDegradation(ChatbotError):
    """Retrieval or memory load failed; that prompt section is omitted."""

    code = "context_degraded"


class ExtractionError(ChatbotError):
    """Post-turn memory extraction failed or returned malformed data."""

    code = "extraction_error"
