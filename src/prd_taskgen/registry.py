"""Provider registry and context-dependent model selection.

Holds the adapters for one process and picks the best one for a request:
available adapters are ranked by their priority for the request's context
and the winner is initialized. An adapter that fails to initialize is
excluded and the next one is tried.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Optional

from .errors import NoProviderAvailableError
from .models import CallContext, GenerationConfig, ProviderKind
from .protocols import ModelAdapter
from .providers import ClaudeAdapter, DeepSeekAdapter, ModelClient, PerplexityAdapter
from .reporting import Reporter, ensure_reporter


@dataclass(frozen=True)
class SelectedModel:
    """The adapter chosen for a request and its initialized client."""
    adapter: ModelAdapter
    client: ModelClient

    @property
    def kind(self) -> ProviderKind:
        return self.adapter.kind


class ProviderRegistry:
    """Ordered collection of provider adapters.

    Built once at startup and passed to whatever needs provider access.
    Registration order breaks priority ties (first registered wins).
    """

    def __init__(self, adapters: Optional[list[ModelAdapter]] = None):
        self._adapters: dict[ProviderKind, ModelAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: ModelAdapter) -> "ProviderRegistry":
        """Register an adapter, replacing any previous one of the same kind.

        Returns:
            The registry, so calls can be chained.
        """
        if not isinstance(adapter, ModelAdapter) or not isinstance(
            getattr(adapter, "kind", None), ProviderKind
        ):
            raise TypeError(f"Invalid model adapter: {adapter!r}")
        self._adapters[adapter.kind] = adapter
        return self

    def get_adapter(self, kind: ProviderKind) -> Optional[ModelAdapter]:
        return self._adapters.get(kind)

    @property
    def adapters(self) -> list[ModelAdapter]:
        """All adapters in registration order."""
        return list(self._adapters.values())

    def __len__(self) -> int:
        return len(self._adapters)

    def __contains__(self, kind: object) -> bool:
        return kind in self._adapters

    def rank(
        self,
        credentials: Mapping[str, str],
        context: CallContext,
    ) -> list[tuple[ModelAdapter, int]]:
        """Available, non-excluded adapters with their priorities, best first.

        ``sorted`` is stable, so equal priorities keep registration order.
        """
        candidates = [
            (adapter, adapter.get_priority(context))
            for adapter in self._adapters.values()
            if adapter.kind not in context.excluded_provider_types
            and adapter.is_available(credentials)
        ]
        return sorted(candidates, key=lambda item: item[1], reverse=True)

    async def select_best_model(
        self,
        credentials: Mapping[str, str],
        context: CallContext,
        reporter: Optional[Reporter] = None,
    ) -> SelectedModel:
        """Pick and initialize the highest-priority usable adapter.

        Args:
            credentials: Read-only credential source.
            context: Request context; its excluded providers are skipped.
            reporter: Optional log/progress sink.

        Returns:
            SelectedModel with the adapter and its client.

        Raises:
            NoProviderAvailableError: If no adapter is both available and
                initializable.
        """
        reporter = ensure_reporter(reporter, __name__)
        last_error: Optional[str] = None

        while True:
            ranked = self.rank(credentials, context)
            if not ranked:
                raise NoProviderAvailableError(last_error)

            adapter, priority = ranked[0]
            reporter.debug(
                "Provider ranking: %s",
                ", ".join(f"{a.kind.value}={p}" for a, p in ranked),
            )
            reporter.info("Selected model: %s (priority %d)", adapter.kind.value, priority)

            try:
                client = await adapter.initialize(credentials)
            except Exception as e:
                last_error = str(e)
                reporter.warning("Failed to initialize %s: %s", adapter.kind.value, e)
                context = context.excluding(adapter.kind)
                continue

            return SelectedModel(adapter=adapter, client=client)

    def describe(
        self,
        credentials: Mapping[str, str],
        context: CallContext,
    ) -> list[dict]:
        """Availability and priority of every registered adapter.

        Returns:
            One dict per adapter in registration order with kind, api key
            variable, availability, priority and whether it would be selected.
        """
        ranked = self.rank(credentials, context)
        top = ranked[0][0].kind if ranked else None
        return [
            {
                "kind": adapter.kind,
                "api_key_env": getattr(adapter, "api_key_env", ""),
                "available": adapter.is_available(credentials),
                "excluded": adapter.kind in context.excluded_provider_types,
                "priority": adapter.get_priority(context),
                "selected": adapter.kind == top,
            }
            for adapter in self._adapters.values()
        ]


def create_default_registry(config: Optional[GenerationConfig] = None) -> ProviderRegistry:
    """Build the standard registry: Claude, DeepSeek, then Perplexity.

    Args:
        config: Generation config shared by all adapters. When omitted each
            adapter resolves settings from the credentials it is given.
    """
    return ProviderRegistry([
        ClaudeAdapter(config),
        DeepSeekAdapter(config),
        PerplexityAdapter(config),
    ])
