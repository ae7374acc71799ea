"""PRD task generation across Claude, DeepSeek and Perplexity.

This package provides:
- Provider adapters with a common streaming call and retry policy (providers/)
- The provider registry and model selection (registry.py)
- Extraction and validation of task lists from model output (assembler.py)
- The generation pipeline tying them together, plus subtask expansion
  and single-task drafting (generator.py)
"""

from .assembler import ResponseAssembler, RetryRequest
from .credentials import CredentialSource
from .errors import (
    CredentialMissingError,
    ExtractionError,
    NoProviderAvailableError,
    ProviderError,
    TaskGenerationError,
    TaskValidationError,
)
from .generator import TaskGenerator
from .models import (
    CallContext,
    ErrorCategory,
    GenerationConfig,
    ProviderKind,
    SubtaskRecord,
    TaskBatch,
    TaskRecord,
)
from .registry import ProviderRegistry, SelectedModel, create_default_registry

__version__ = "0.1.0"

__all__ = [
    "CallContext",
    "CredentialMissingError",
    "CredentialSource",
    "ErrorCategory",
    "ExtractionError",
    "GenerationConfig",
    "NoProviderAvailableError",
    "ProviderError",
    "ProviderKind",
    "ProviderRegistry",
    "ResponseAssembler",
    "RetryRequest",
    "SelectedModel",
    "SubtaskRecord",
    "TaskBatch",
    "TaskGenerationError",
    "TaskGenerator",
    "TaskRecord",
    "TaskValidationError",
    "create_default_registry",
]
