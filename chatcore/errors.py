from typing import Optional


class ChatError(Exception):
    """Base error for the chat core.

    ``user_message`` is the only text that may reach an end user; the
    exception's own message carries the technical detail for logs.
    """

    status_code: int = 500
    code: str = "chat_error"
    retryable: bool = False
    default_user_message = "Something went wrong. Please try again."

    def __init__(self, detail: str = "", user_message: Optional[str] = None):
        super().__init__(detail or self.default_user_message)
        self.detail = detail
        self.user_message = user_message or self.default_user_message

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.user_message}


class ClassificationFailure(ChatError):
    code = "classification_failed"


class ToolExecutionFailure(ChatError):
    code = "tool_execution_failed"
    default_user_message = "I tried to get that information but encountered an error. Please try again."

    def __init__(self, function_name: str, detail: str = "", user_message: Optional[str] = None):
        super().__init__(detail, user_message)
        self.function_name = function_name


class UnknownFunctionError(ToolExecutionFailure):
    status_code = 400
    code = "unknown_function"

    def __init__(self, function_name: str):
        super().__init__(function_name, f"Unknown function: {function_name}")


class ModelCallFailure(ChatError):
    status_code = 502
    code = "model_call_failed"
    retryable = True
    default_user_message = "I'm sorry, I had trouble generating a response. Please try again."

    def __init__(self, detail: str = "", status: Optional[int] = None):
        super().__init__(detail)
        self.status = status


class CircuitOpenFailure(ChatError):
    status_code = 503
    code = "circuit_open"

    def __init__(self, name: str, retry_after: int, last_error: Optional[str] = None):
        detail = f"{name} temporarily unavailable ({retry_after}s until retry)."
        if last_error:
            detail += f" Last error: {last_error}"
        super().__init__(
            detail,
            f"The knowledge base is temporarily unavailable. Please try again in about {retry_after} seconds.",
        )
        self.name = name
        self.retry_after = retry_after


class CancelledFailure(ChatError):
    status_code = 499
    code = "cancelled"
    default_user_message = "Request cancelled."


class PersistenceFailure(ChatError):
    code = "persistence_failed"


class RateLimitExceeded(ChatError):
    status_code = 429
    code = "rate_limit_exceeded"

    def __init__(self, retry_after: int = 60):
        super().__init__(
            f"retry_after={retry_after}",
            f"Rate limit exceeded. Please wait {retry_after} seconds.",
        )
        self.retry_after = retry_after
