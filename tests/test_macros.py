"""
Tests for the macro engine.
"""

from datetime import datetime
from unittest.mock import MagicMock

import pytest

from ii_chat_context.context import AgentConfig, UserProfile
from ii_chat_context.macros import (
    MacroContext,
    MacroDefinition,
    MacroPhase,
    MacroProcessor,
    MacroRegistry,
    MacroService,
    extract_context_from_session,
)
from ii_chat_context.macros.builtins import register_builtin_macros


@pytest.fixture
def processor():
    registry = MacroRegistry()
    register_builtin_macros(registry)
    return MacroProcessor(registry)


@pytest.mark.asyncio
async def test_fast_path_returns_same_object(processor):
    """Test that text without macros is returned untouched."""
    text = "plain text"
    result = await processor.process(text, MacroContext())

    assert result.output is text
    assert result.has_macros is False
    assert result.macro_count == 0


@pytest.mark.asyncio
async def test_service_fast_path_skips_processor():
    """Test that the service never calls the processor for plain text."""
    processor = MagicMock()
    service = MacroService(processor=processor)
    text = "plain text"

    assert await service.process_macros(text, MacroContext()) is text
    processor.process.assert_not_called()


@pytest.mark.asyncio
async def test_substitute_names(processor):
    """Test user and char substitution."""
    context = MacroContext(user_name="Sam", char_name="Aria")
    result = await processor.process("{{char}} greets {{user}}.", context)

    assert result.output == "Aria greets Sam."
    assert result.has_macros is True
    assert result.macro_count == 2


@pytest.mark.asyncio
async def test_unknown_macro_left_in_place(processor):
    """Test that unknown macros survive processing."""
    result = await processor.process("Hi {{nope}}", MacroContext())
    assert result.output == "Hi {{nope}}"


@pytest.mark.asyncio
async def test_pre_process_runs_before_post_process(processor):
    """Test that variables set in pre-process are visible to post-process macros."""
    context = MacroContext()
    result = await processor.process("{{setvar::mood::happy}}Mood: {{getvar::mood}}", context)

    assert result.output == "Mood: happy"
    assert context.variables["mood"] == "happy"


@pytest.mark.asyncio
async def test_incvar_counts(processor):
    """Test that incvar increments a variable."""
    context = MacroContext(variables={"n": "2"})
    result = await processor.process("{{incvar::n}}", context)

    assert result.output == "3"


@pytest.mark.asyncio
async def test_failing_macro_left_in_place():
    """Test that a macro that raises does not abort processing."""
    registry = MacroRegistry()
    register_builtin_macros(registry)

    def boom(context, args):
        raise RuntimeError("boom")

    registry.register(MacroDefinition("boom", MacroPhase.SUBSTITUTE, boom))
    processor = MacroProcessor(registry)

    result = await processor.process("{{boom}} {{user}}", MacroContext(user_name="Sam"))
    assert result.output == "{{boom}} Sam"


@pytest.mark.asyncio
async def test_date_macros_use_context_timestamp(processor):
    """Test date and weekday macros read the context timestamp."""
    context = MacroContext(timestamp=datetime(2024, 3, 4, 9, 30, 0))
    result = await processor.process("{{date}} {{time}} {{weekday}}", context)

    assert result.output == "2024-03-04 09:30:00 Monday"


@pytest.mark.asyncio
async def test_trim_removes_surrounding_whitespace(processor):
    """Test that trim removes itself and adjacent whitespace."""
    result = await processor.process("line one\n{{trim}}\nline two", MacroContext())
    assert result.output == "line oneline two"


@pytest.mark.asyncio
async def test_batch_failure_isolated():
    """Test that one failing text does not abort the batch."""
    service = MacroService()

    async def flaky(text, context):
        if "bad" in text:
            raise RuntimeError("broken")
        return MagicMock(output=text.replace("{{user}}", "Sam"))

    service.processor.process = flaky
    outputs = await service.process_macros_batch(
        ["hi {{user}}", "{{bad}}", "plain"],
        MacroContext(),
    )

    assert outputs == ["hi Sam", "{{bad}}", "plain"]


@pytest.mark.asyncio
async def test_build_context_from_agent_and_profile(make_session):
    """Test that the service context carries agent, profile and last messages."""
    session = make_session(4)
    agent = AgentConfig(
        id="a", name="Aria", profile_id="p", model_id="m", description="A helpful guide"
    )
    profile = UserProfile(id="u", name="Sam", content="Likes tea")
    service = MacroService()

    context = service.build_context(session=session, agent=agent, user_profile=profile)
    output = await service.process_macros(
        "{{char}}/{{user}}/{{persona}}/{{description}}/{{lastUserMessage}}", context
    )

    assert output == "Aria/Sam/Likes tea/A helpful guide/message 2"


@pytest.mark.asyncio
async def test_session_variables_persist_between_calls(make_session):
    """Test that variables are kept per session across contexts."""
    session = make_session(2)
    service = MacroService()

    await service.process_macros("{{setvar::count::5}}", service.build_context(session=session))
    output = await service.process_macros("{{getvar::count}}", service.build_context(session=session))

    assert output == "5"


def test_extract_context_skips_disabled(make_session):
    """Test that disabled nodes are ignored when extracting last messages."""
    session = make_session(4)
    session.nodes[session.active_leaf_id].is_enabled = False

    extracted = extract_context_from_session(session)

    assert extracted["last_message"] == "message 2"
    assert extracted["last_char_message"] == "message 1"


def test_validate_macro(processor):
    """Test macro validation."""
    assert processor.validate_macro("user").valid is True
    assert processor.validate_macro("setvar::a::b").valid is True
    assert processor.validate_macro("setvar").valid is False
    assert processor.validate_macro("unknown").valid is False


def test_extract_macros(processor):
    """Test macro discovery in text."""
    found = processor.extract_macros("{{user}} rolls {{roll::1d6}}")
    assert [m["name"] for m in found] == ["user", "roll"]
    assert found[1]["args"] == ["1d6"]
