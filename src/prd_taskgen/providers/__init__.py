"""Provider adapters for the supported LLM vendors.

- ClaudeAdapter: Anthropic Messages API
- DeepSeekAdapter / PerplexityAdapter: OpenAI-compatible chat completions
"""

from .base import ModelClient, ProviderAdapter
from .claude import ClaudeAdapter
from .openai_compat import DeepSeekAdapter, OpenAICompatibleAdapter, PerplexityAdapter

__all__ = [
    "ModelClient",
    "ProviderAdapter",
    "ClaudeAdapter",
    "OpenAICompatibleAdapter",
    "DeepSeekAdapter",
    "PerplexityAdapter",
]
