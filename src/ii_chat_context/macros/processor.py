"""
Macro processor.

Expands {{name}} and {{name::arg::arg}} tokens in three phases:
pre-process (state changes), substitute (static values) and
post-process (dynamic values). Text without "{{" is returned as-is
without touching the registry.
"""

import asyncio
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

import structlog

from .builtins import TRIM_MARKER
from .context import MacroContext, create_macro_context, extract_context_from_session
from .registry import MacroPhase, MacroRegistry, get_macro_registry

if TYPE_CHECKING:
    from ..context.presets import AgentConfig, UserProfile
    from ..conversation.nodes import ConversationSession

logger = structlog.get_logger()

MACRO_PATTERN = re.compile(r"\{\{([^}]+?)\}\}")
_TRIM_PATTERN = re.compile(r"\s*" + re.escape(TRIM_MARKER) + r"\s*")

PHASE_ORDER = (MacroPhase.PRE_PROCESS, MacroPhase.SUBSTITUTE, MacroPhase.POST_PROCESS)


@dataclass
class MacroProcessResult:
    """Result of processing one text."""

    output: str
    has_macros: bool
    macro_count: int = 0


@dataclass
class MacroValidationResult:
    valid: bool
    error: str | None = None
    suggestions: list[str] = field(default_factory=list)


def parse_macro(content: str) -> tuple[str, list[str]]:
    """Split macro content into name and arguments."""
    if "::" not in content:
        return content.strip(), []
    parts = [p.strip() for p in content.split("::")]
    return parts[0], parts[1:]


class MacroProcessor:
    """Three-phase macro expansion engine."""

    def __init__(self, registry: MacroRegistry | None = None):
        self.registry = registry or get_macro_registry()

    async def process(self, text: str, context: MacroContext) -> MacroProcessResult:
        """Expand all macros in text."""
        if "{{" not in text:
            return MacroProcessResult(output=text, has_macros=False, macro_count=0)

        current = text
        macro_count = 0
        for phase in PHASE_ORDER:
            current, count = await self._process_phase(current, context, phase)
            macro_count += count

        if TRIM_MARKER in current:
            current = _TRIM_PATTERN.sub("", current)

        logger.debug(
            "Macro processing complete",
            macro_count=macro_count,
            original_length=len(text),
            output_length=len(current),
        )
        return MacroProcessResult(output=current, has_macros=True, macro_count=macro_count)

    async def _process_phase(
        self,
        text: str,
        context: MacroContext,
        phase: MacroPhase,
    ) -> tuple[str, int]:
        phase_names = {m.name for m in self.registry.get_by_phase(phase)}
        replacements: dict[str, str] = {}

        for match in MACRO_PATTERN.finditer(text):
            full_match = match.group(0)
            if full_match in replacements:
                continue
            name, args = parse_macro(match.group(1))
            if name not in phase_names:
                continue
            macro = self.registry.get(name)
            if macro is None:
                continue
            try:
                replacements[full_match] = await macro.run(context, args)
            except Exception as e:
                logger.warning("Macro execution failed", macro=name, phase=phase.value, error=str(e))

        if not replacements:
            return text, 0

        output = MACRO_PATTERN.sub(
            lambda m: replacements.get(m.group(0), m.group(0)),
            text,
        )
        return output, len(replacements)

    def validate_macro(self, content: str) -> MacroValidationResult:
        """Check that macro content names a known macro with valid arguments."""
        name, args = parse_macro(content)
        macro = self.registry.get(name)
        if macro is None:
            similar = [m for m in self.registry.list_macros() if name.lower() in m.lower()][:3]
            return MacroValidationResult(valid=False, error=f"Unknown macro: {name}", suggestions=similar)

        if macro.accepts_args:
            if not args:
                return MacroValidationResult(valid=False, error=f"Macro {name} requires arguments")
            if macro.arg_count is not None and len(args) != macro.arg_count:
                return MacroValidationResult(
                    valid=False,
                    error=f"Macro {name} takes {macro.arg_count} arguments, got {len(args)}",
                )
        elif args:
            return MacroValidationResult(valid=False, error=f"Macro {name} takes no arguments")

        return MacroValidationResult(valid=True)

    @staticmethod
    def extract_macros(text: str) -> list[dict[str, Any]]:
        """List all macros in text."""
        result = []
        for match in MACRO_PATTERN.finditer(text):
            name, args = parse_macro(match.group(1))
            result.append({"name": name, "args": args, "full_match": match.group(0)})
        return result


class MacroService:
    """Builds macro contexts from session state and runs the processor."""

    def __init__(self, processor: MacroProcessor | None = None):
        self.processor = processor or MacroProcessor()
        self._session_variables: dict[str, dict[str, Any]] = {}
        self._global_variables: dict[str, Any] = {}

    def build_context(
        self,
        session: "ConversationSession | None" = None,
        agent: "AgentConfig | None" = None,
        user_profile: "UserProfile | None" = None,
        input_text: str | None = None,
        timestamp: datetime | None = None,
    ) -> MacroContext:
        """Build a macro context once for a call site."""
        context = create_macro_context(
            session=session,
            agent=agent,
            user_profile=user_profile,
            timestamp=timestamp,
            global_variables=self._global_variables,
        )
        if session is not None:
            for key, value in extract_context_from_session(session).items():
                setattr(context, key, value)
            context.variables = self._session_variables.setdefault(session.id, {})
        if input_text is not None:
            context.input = input_text
        return context

    async def process_macros(self, text: str, context: MacroContext) -> str:
        """Process one text; failures return the text unchanged."""
        if "{{" not in text:
            return text
        try:
            result = await self.processor.process(text, context)
        except Exception as e:
            logger.error("Macro processing failed", error=str(e), text_preview=text[:100])
            return text
        return result.output

    async def process_macros_batch(self, texts: list[str], context: MacroContext) -> list[str]:
        """Process many texts against one shared context."""
        return list(await asyncio.gather(*(self.process_macros(text, context) for text in texts)))
