"""Protocol definitions for the provider layer and its collaborators.

These protocols define the seams the core depends on, enabling:
- Test doubles for adapters without vendor SDK clients
- Editor integrations plugging in their own log sinks
"""

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, Optional, Protocol, runtime_checkable

from .models import CallContext, ErrorCategory, ModelCallResult, ProviderKind

if TYPE_CHECKING:
    from .providers.base import ModelClient
    from .reporting import Reporter


@runtime_checkable
class LogSink(Protocol):
    """Leveled logger supplied by the caller (e.g. an MCP server log)."""

    def info(self, message: str) -> Any:
        ...

    def warning(self, message: str) -> Any:
        ...

    def error(self, message: str) -> Any:
        ...

    def debug(self, message: str) -> Any:
        ...


@runtime_checkable
class ModelAdapter(Protocol):
    """Capability set every provider adapter offers the registry.

    ``kind`` is fixed per adapter and resolved once at registration.
    """

    kind: ProviderKind

    def is_available(self, credentials: Mapping[str, str]) -> bool:
        """True iff the adapter's API key is present."""
        ...

    async def initialize(self, credentials: Mapping[str, str]) -> "ModelClient":
        """Construct the vendor client or raise CredentialMissingError."""
        ...

    async def call_model(
        self,
        client: "ModelClient",
        context: CallContext,
        reporter: Optional["Reporter"] = None,
    ) -> ModelCallResult:
        """Stream a completion and return the accumulated text."""
        ...

    async def close(self, client: "ModelClient") -> None:
        """Release the client returned by initialize."""
        ...

    def get_priority(self, context: CallContext) -> int:
        """Context-dependent ranking score (higher wins)."""
        ...

    def classify_error(self, error: BaseException) -> ErrorCategory:
        """Map a vendor exception onto the common taxonomy."""
        ...
