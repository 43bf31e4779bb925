"""
Context assembly: presets, token window, attachments and compression.
"""

from .attachments import AssetConverter, DefaultAssetConverter, ModelCapabilities
from .builder import ContextBuilder, ContextPreview, LlmContextData, SegmentStats
from .compression import (
    CompressionEngine,
    CompressionState,
    ContextStats,
    SummarizationError,
    calculate_context_stats,
    select_batch,
    should_compress,
)
from .limiter import apply_context_limit, truncate_content, truncate_text
from .presets import (
    AgentConfig,
    ChatHistorySlot,
    TextPreset,
    UserProfile,
    UserProfileSlot,
    parse_preset,
)

__all__ = [
    "AgentConfig",
    "AssetConverter",
    "ChatHistorySlot",
    "CompressionEngine",
    "CompressionState",
    "ContextBuilder",
    "ContextPreview",
    "ContextStats",
    "DefaultAssetConverter",
    "LlmContextData",
    "ModelCapabilities",
    "SegmentStats",
    "SummarizationError",
    "TextPreset",
    "UserProfile",
    "UserProfileSlot",
    "apply_context_limit",
    "calculate_context_stats",
    "parse_preset",
    "select_batch",
    "should_compress",
    "truncate_content",
    "truncate_text",
]
