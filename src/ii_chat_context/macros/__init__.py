"""
Macro engine for preset and profile text.
"""

from .context import MacroContext, create_macro_context, extract_context_from_session
from .processor import MacroProcessResult, MacroProcessor, MacroService
from .registry import MacroDefinition, MacroPhase, MacroRegistry, get_macro_registry

__all__ = [
    "MacroContext",
    "MacroDefinition",
    "MacroPhase",
    "MacroProcessResult",
    "MacroProcessor",
    "MacroRegistry",
    "MacroService",
    "create_macro_context",
    "extract_context_from_session",
    "get_macro_registry",
]
