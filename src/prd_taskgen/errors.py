"""Error taxonomy for provider calls and task assembly.

Architecture:
- TaskGenerationError: root of everything the core raises
- CredentialMissingError: configuration problem, never retried
- ProviderError: vendor call failed after the adapter's local retries
- ExtractionError / TaskValidationError: model output unusable
- NoProviderAvailableError: registry ran out of candidates
- classify_error(): text-based fallback classification
"""

from typing import Optional

from .models import ErrorCategory, ProviderKind


class TaskGenerationError(Exception):
    """Base class for errors surfaced by the generation core."""


class CredentialMissingError(TaskGenerationError):
    """A provider's API key is not configured."""

    def __init__(self, provider: ProviderKind, env_var: str):
        self.provider = provider
        self.env_var = env_var
        super().__init__(
            f"{env_var} not found in session environment or process environment"
        )


class ProviderError(TaskGenerationError):
    """A vendor call failed with a classified error."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        provider: Optional[ProviderKind] = None,
        attempts: int = 1,
    ):
        self.category = category
        self.provider = provider
        self.attempts = attempts
        super().__init__(message)

    @property
    def is_overload(self) -> bool:
        return self.category == ErrorCategory.OVERLOADED


class ExtractionError(TaskGenerationError):
    """No parseable task JSON was found in the model response."""

    def __init__(self, message: str, raw_response: str = ""):
        self.raw_response = raw_response
        super().__init__(message)


class TaskValidationError(TaskGenerationError):
    """The extracted task list stayed incomplete after all retries."""

    def __init__(self, message: str, raw_response: str = ""):
        self.raw_response = raw_response
        super().__init__(message)


class NoProviderAvailableError(TaskGenerationError):
    """No provider is both available and initializable."""

    GUIDANCE = (
        "Check your API key configuration: set at least one of "
        "ANTHROPIC_API_KEY, DEEPSEEK_API_KEY or PERPLEXITY_API_KEY "
        "(and LLM_PROVIDER to choose the preferred one)."
    )

    def __init__(self, reason: Optional[str] = None):
        self.reason = reason
        message = "No AI model is available."
        if reason:
            message = f"{message} Last error: {reason}."
        super().__init__(f"{message} {self.GUIDANCE}")


# =============================================================================
# Error Classification
# =============================================================================

def classify_error(error_text: Optional[str]) -> ErrorCategory:
    """Classify an error message when no structured vendor error is present.

    Args:
        error_text: The error message to classify

    Returns:
        ErrorCategory indicating what type of error occurred
    """
    if not error_text:
        return ErrorCategory.UNKNOWN

    error_lower = error_text.lower()

    if any(phrase in error_lower for phrase in [
        "overloaded",
        "529",
        "high demand",
        "capacity",
    ]):
        return ErrorCategory.OVERLOADED

    if any(phrase in error_lower for phrase in [
        "rate limit",
        "rate_limit",
        "429",
        "too many requests",
        "throttl",
    ]):
        return ErrorCategory.RATE_LIMITED

    if any(phrase in error_lower for phrase in [
        "timeout",
        "timed out",
    ]):
        return ErrorCategory.TIMEOUT

    if any(phrase in error_lower for phrase in [
        "network",
        "connection",
        "unreachable",
        "dns",
        "temporarily unavailable",
    ]):
        return ErrorCategory.NETWORK

    if any(phrase in error_lower for phrase in [
        "invalid_request",
        "invalid request",
        "bad request",
        "400",
    ]):
        return ErrorCategory.INVALID_REQUEST

    return ErrorCategory.UNKNOWN
