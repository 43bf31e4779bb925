"""
Macro registry.
"""

import inspect
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Any, Awaitable, Callable, Union

import structlog

from .context import MacroContext

logger = structlog.get_logger()


class MacroPhase(str, Enum):
    """Execution phase. Phases run in declaration order."""
    PRE_PROCESS = "pre_process"
    SUBSTITUTE = "substitute"
    POST_PROCESS = "post_process"


class MacroType(str, Enum):
    VALUE = "value"
    VARIABLE = "variable"
    FUNCTION = "function"


MacroHandler = Callable[[MacroContext, list[str]], Union[str, Awaitable[str]]]


@dataclass
class MacroDefinition:
    """A named macro and how to evaluate it."""

    name: str
    phase: MacroPhase
    execute: MacroHandler
    type: MacroType = MacroType.VALUE
    description: str = ""
    example: str = ""
    accepts_args: bool = False
    arg_count: int | None = None

    async def run(self, context: MacroContext, args: list[str]) -> str:
        result: Any = self.execute(context, args)
        if inspect.isawaitable(result):
            result = await result
        return "" if result is None else str(result)


class MacroRegistry:
    """Registry of available macros, grouped by phase."""

    def __init__(self):
        self._macros: dict[str, MacroDefinition] = {}

    def register(self, macro: MacroDefinition) -> None:
        if macro.name in self._macros:
            logger.debug("Macro overridden", name=macro.name)
        self._macros[macro.name] = macro

    def register_many(self, macros: list[MacroDefinition]) -> None:
        for macro in macros:
            self.register(macro)

    def unregister(self, name: str) -> None:
        self._macros.pop(name, None)

    def get(self, name: str) -> MacroDefinition | None:
        return self._macros.get(name)

    def get_by_phase(self, phase: MacroPhase) -> list[MacroDefinition]:
        return [m for m in self._macros.values() if m.phase == phase]

    def list_macros(self) -> list[str]:
        return list(self._macros.keys())


@lru_cache
def get_macro_registry() -> MacroRegistry:
    """Get the shared registry with built-in macros loaded."""
    from .builtins import register_builtin_macros

    registry = MacroRegistry()
    register_builtin_macros(registry)
    return registry
