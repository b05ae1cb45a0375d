from .pipeline import ChunkEvent, CompletedEvent, SummaryPipeline, merge_red_flags, parse_ai_red_flags
from .prompt import RED_FLAG_MARKER, build_summary_prompt
from .providers import (
    AnthropicModel,
    FallbackSummaryModel,
    ModelCompletion,
    OpenAICompatibleModel,
    ProviderError,
    SummaryModel,
    build_summary_model,
)

__all__ = [
    "RED_FLAG_MARKER",
    "AnthropicModel",
    "ChunkEvent",
    "CompletedEvent",
    "FallbackSummaryModel",
    "ModelCompletion",
    "OpenAICompatibleModel",
    "ProviderError",
    "SummaryModel",
    "SummaryPipeline",
    "build_summary_model",
    "build_summary_prompt",
    "merge_red_flags",
    "parse_ai_red_flags",
]
