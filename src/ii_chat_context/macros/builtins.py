"""
Built-in macros: core values, variables, functions and date/time.
"""

import random
import re
import zlib

from .context import MacroContext
from .registry import MacroDefinition, MacroPhase, MacroRegistry, MacroType

_ROLL_PATTERN = re.compile(r"^(\d*)d(\d+)([+-]\d+)?$", re.IGNORECASE)

# Replaced by the processor together with surrounding newlines
TRIM_MARKER = "__TRIM__"

WEEKDAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]


def _number(value) -> float | int:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    return int(number) if number.is_integer() else number


def _set_var(store: dict, args: list[str]) -> str:
    if len(args) < 2:
        raise ValueError("setvar requires a name and a value")
    store[args[0]] = args[1]
    return ""


def _add_var(store: dict, args: list[str], delta: int) -> str:
    if not args:
        raise ValueError("variable name required")
    store[args[0]] = _number(store.get(args[0], 0)) + delta
    return str(store[args[0]])


def _roll(context: MacroContext, args: list[str]) -> str:
    match = _ROLL_PATTERN.match(args[0].strip()) if args else None
    if not match:
        raise ValueError(f"invalid dice expression: {args}")
    count = int(match.group(1) or 1)
    sides = int(match.group(2))
    modifier = int(match.group(3) or 0)
    if count < 1 or sides < 1:
        raise ValueError("dice count and sides must be positive")
    return str(sum(random.randint(1, sides) for _ in range(count)) + modifier)


def _pick(context: MacroContext, args: list[str]) -> str:
    if not args:
        raise ValueError("pick requires at least one option")
    seed = (context.session.id if context.session else None) or context.last_message or ""
    return args[zlib.crc32(seed.encode("utf-8")) % len(args)]


def _random(context: MacroContext, args: list[str]) -> str:
    if not args:
        raise ValueError("random requires at least one option")
    return random.choice(args)


def register_builtin_macros(registry: MacroRegistry) -> None:
    """Register every built-in macro."""
    sub = MacroPhase.SUBSTITUTE
    pre = MacroPhase.PRE_PROCESS
    post = MacroPhase.POST_PROCESS

    registry.register_many([
        # Core values
        MacroDefinition("user", sub, lambda c, a: c.user_name or "User", description="Current user name"),
        MacroDefinition("char", sub, lambda c, a: c.char_name or "Assistant", description="Current agent name"),
        MacroDefinition("persona", sub, lambda c, a: c.user_profile or "", description="User profile text"),
        MacroDefinition("description", sub, lambda c, a: c.char_description or "", description="Agent description"),
        MacroDefinition("lastMessage", post, lambda c, a: c.last_message or ""),
        MacroDefinition("lastUserMessage", post, lambda c, a: c.last_user_message or ""),
        MacroDefinition("lastCharMessage", post, lambda c, a: c.last_char_message or ""),
        MacroDefinition("input", post, lambda c, a: c.input or ""),

        # Variables
        MacroDefinition(
            "setvar", pre, lambda c, a: _set_var(c.variables, a),
            type=MacroType.VARIABLE, accepts_args=True, arg_count=2, example="{{setvar::mood::happy}}",
        ),
        MacroDefinition(
            "getvar", post, lambda c, a: str(c.variables.get(a[0], "")) if a else "",
            type=MacroType.VARIABLE, accepts_args=True, arg_count=1,
        ),
        MacroDefinition(
            "incvar", pre, lambda c, a: _add_var(c.variables, a, 1),
            type=MacroType.VARIABLE, accepts_args=True, arg_count=1,
        ),
        MacroDefinition(
            "decvar", pre, lambda c, a: _add_var(c.variables, a, -1),
            type=MacroType.VARIABLE, accepts_args=True, arg_count=1,
        ),
        MacroDefinition(
            "setglobalvar", pre, lambda c, a: _set_var(c.global_variables, a),
            type=MacroType.VARIABLE, accepts_args=True, arg_count=2,
        ),
        MacroDefinition(
            "getglobalvar", post, lambda c, a: str(c.global_variables.get(a[0], "")) if a else "",
            type=MacroType.VARIABLE, accepts_args=True, arg_count=1,
        ),

        # Functions
        MacroDefinition("roll", pre, _roll, type=MacroType.FUNCTION, accepts_args=True, arg_count=1, example="{{roll::1d20}}"),
        MacroDefinition("random", post, _random, type=MacroType.FUNCTION, accepts_args=True, example="{{random::a::b}}"),
        MacroDefinition("pick", post, _pick, type=MacroType.FUNCTION, accepts_args=True),
        MacroDefinition("newline", post, lambda c, a: "\n", type=MacroType.FUNCTION),
        MacroDefinition("trim", post, lambda c, a: TRIM_MARKER, type=MacroType.FUNCTION),

        # Date and time
        MacroDefinition("time", post, lambda c, a: c.now.strftime("%H:%M:%S")),
        MacroDefinition("date", post, lambda c, a: c.now.strftime("%Y-%m-%d")),
        MacroDefinition("isotime", post, lambda c, a: c.now.isoformat(timespec="seconds")),
        MacroDefinition("weekday", post, lambda c, a: WEEKDAYS[c.now.weekday()]),
        MacroDefinition("timestamp", post, lambda c, a: str(int(c.now.timestamp() * 1000))),
    ])
