"""
Exception classes for the command center backend.

Routes and services raise these; main.py turns them into JSON responses.
Every message is safe to show to the user as-is.
"""


class CommandCenterError(Exception):
    """Base exception for all command center errors."""
    code = "error"
    status_code = 500


class ConfigError(CommandCenterError):
    """Required configuration is missing or invalid."""
    code = "configuration"
    status_code = 503


class AuthError(CommandCenterError):
    """Sign-in failed or the session is missing/expired."""
    code = "auth"
    status_code = 401


class TaskNotFoundError(CommandCenterError):
    """Task doesn't exist or isn't owned by the current user."""
    code = "not_found"
    status_code = 404

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task {task_id} not found")


class InvalidInputError(CommandCenterError):
    code = "invalid_input"
    status_code = 422


class StoreError(CommandCenterError):
    """A document store write or read failed."""
    code = "store"
    status_code = 500


# AI errors

class AIError(CommandCenterError):
    """Base for everything that can go wrong on the AI-assisted path."""
    code = "ai_error"
    status_code = 502


class MissingApiKeyError(AIError):
    code = "ai_missing_key"
    status_code = 400

    def __init__(self):
        super().__init__(
            "Anthropic API key is missing. Please configure it in settings to use AI features."
        )


class EmptyResponseError(AIError):
    code = "ai_empty_response"

    def __init__(self):
        super().__init__("AI model returned an empty text response. Please try again.")


class InvalidJSONError(AIError):
    code = "ai_invalid_json"

    def __init__(self):
        super().__init__(
            "AI model response was not valid JSON. Please try rephrasing your request "
            "or check the AI's output format."
        )


class NoCandidateError(AIError):
    code = "ai_no_candidate"

    def __init__(self):
        super().__init__("AI model did not return a valid response candidate. Please try again.")


class BlockedContentError(AIError):
    code = "ai_blocked"

    def __init__(self, reason: str = "refusal"):
        self.reason = reason
        super().__init__(
            "AI request was blocked for safety reasons. Please rephrase your request "
            "or check content policies."
        )


class InvalidApiKeyError(AIError):
    code = "ai_invalid_key"

    def __init__(self):
        super().__init__("Invalid Anthropic API Key. Please check your key in settings.")


class UnauthorizedApiKeyError(AIError):
    code = "ai_unauthorized"

    def __init__(self):
        super().__init__(
            "Anthropic API Key is not authorized, permission denied, or billing may not be "
            "configured. Check the key, your organization settings, and your credit balance."
        )


class QuotaExceededError(AIError):
    code = "ai_quota"
    status_code = 429

    def __init__(self):
        super().__init__(
            "AI request quota exceeded. Please try again later or check your Anthropic usage limits."
        )


class ModelNotFoundError(AIError):
    code = "ai_model_not_found"

    def __init__(self, model: str):
        self.model = model
        super().__init__(
            f"AI model ({model}) not found. This could be a temporary issue or configuration "
            "problem. Please ensure the model name is correct."
        )


class AIProcessingError(AIError):
    """Catch-all for upstream failures the classifier doesn't recognize."""
    code = "ai_failed"
