"""
Command-line interface for ii-chat-context.
"""

import argparse
import asyncio
import sys
from pathlib import Path

import structlog

from .config import get_settings
from .conversation import ConversationSession, SessionManager, SessionStore, get_node_path, validate_node_integrity

structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.dev.ConsoleRenderer(colors=True),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

PREVIEW_LENGTH = 60


def main() -> None:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="ii-chat-context",
        description="ii-chat-context - Branching conversation trees and LLM context assembly",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("init", help="Initialize (create .env, database tables)")
    subparsers.add_parser("sessions", help="List stored sessions")

    tree_parser = subparsers.add_parser("tree", help="Print a session's conversation tree")
    tree_parser.add_argument("session_id", help="Session id")

    validate_parser = subparsers.add_parser("validate", help="Check a session's tree integrity")
    validate_parser.add_argument("session_id", help="Session id")

    compress_parser = subparsers.add_parser("compress", help="Compress the oldest history of a session")
    compress_parser.add_argument("session_id", help="Session id")

    config_parser = subparsers.add_parser("config", help="Show configuration")
    config_parser.add_argument("--check", action="store_true", help="Check configuration validity")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    if args.command == "init":
        asyncio.run(init_project())
    elif args.command == "sessions":
        asyncio.run(list_sessions())
    elif args.command == "tree":
        asyncio.run(show_tree(args.session_id))
    elif args.command == "validate":
        ok = asyncio.run(validate_session(args.session_id))
        sys.exit(0 if ok else 1)
    elif args.command == "compress":
        asyncio.run(compress_session(args.session_id))
    elif args.command == "config":
        show_config(args.check)
    else:
        parser.print_help()


async def _session_manager() -> SessionManager:
    from .models import init_database

    settings = get_settings()
    session_maker = await init_database(settings.database_url)
    return SessionManager(SessionStore(session_maker))


async def _load(session_id: str) -> tuple[SessionManager, ConversationSession | None]:
    manager = await _session_manager()
    session = await manager.load_session(session_id)
    if session is None:
        logger.error("Session not found", session_id=session_id)
    return manager, session


def _preview(text: str) -> str:
    text = " ".join(text.split())
    return text if len(text) <= PREVIEW_LENGTH else text[:PREVIEW_LENGTH] + "..."


def render_tree(session: ConversationSession) -> list[str]:
    """Render the tree as indented lines; '*' marks the active path."""
    active = {node.id for node in get_node_path(session, session.active_leaf_id)}
    lines: list[str] = []
    seen: set[str] = set()
    stack: list[tuple[str, int]] = [(session.root_node_id, 0)]

    while stack:
        node_id, depth = stack.pop()
        node = session.nodes.get(node_id)
        if node is None or node_id in seen:
            continue
        seen.add(node_id)

        marker = "*" if node_id in active else " "
        tags = []
        if node.is_compression_node:
            tags.append(f"summary of {len(node.compressed_node_ids)}")
        if not node.is_enabled:
            tags.append("disabled")
        if node.status.value != "complete":
            tags.append(node.status.value)
        tag_text = f" [{', '.join(tags)}]" if tags else ""

        label = "root" if node.parent_id is None else f"{node.role.value}: {_preview(node.content)}"
        lines.append(f"{marker} {'  ' * depth}{label}{tag_text}  ({node.id})")

        for child_id in reversed(node.children_ids):
            stack.append((child_id, depth + 1))

    return lines


async def init_project() -> None:
    """Create the data directory, a .env template and the database tables."""
    from .models import init_database

    env_file = Path(".env")
    data_dir = Path("data")
    data_dir.mkdir(exist_ok=True)

    if not env_file.exists():
        env_content = """# ii-chat-context Configuration

# Database
CHAT_CONTEXT_DATABASE_URL=sqlite+aiosqlite:///./data/chat_context.db

# LLM profiles (JSON list)
# CHAT_CONTEXT_PROFILES=[{"id": "openai", "provider": "openai", "api_key": "sk-...", "models": [{"id": "gpt-4o"}]}]

# Context window for session history
CHAT_CONTEXT_CONTEXT_MANAGEMENT__ENABLED=false
CHAT_CONTEXT_CONTEXT_MANAGEMENT__MAX_CONTEXT_TOKENS=0
CHAT_CONTEXT_CONTEXT_MANAGEMENT__RETAINED_CHARACTERS=200

# Summary-based compression
CHAT_CONTEXT_CONTEXT_COMPRESSION__ENABLED=false
CHAT_CONTEXT_CONTEXT_COMPRESSION__TRIGGER_MODE=token
CHAT_CONTEXT_CONTEXT_COMPRESSION__TOKEN_THRESHOLD=80000

# Logging
CHAT_CONTEXT_LOG_LEVEL=INFO
"""
        env_file.write_text(env_content)
        print(f"✅ Created {env_file}")
    else:
        print(f"ℹ️  {env_file} already exists")

    settings = get_settings()
    await init_database(settings.database_url)
    print(f"✅ Database ready at {settings.database_url}")


async def list_sessions() -> None:
    """List stored sessions."""
    manager = await _session_manager()
    sessions = await manager.list_sessions()

    if not sessions:
        print("No sessions stored.")
        return

    print(f"\n{'ID':<38} {'Name':<30} {'Nodes':<7} {'Updated':<20}")
    print("-" * 97)

    for s in sessions:
        updated = s.updated_at.strftime("%Y-%m-%d %H:%M:%S") if s.updated_at else "N/A"
        print(f"{s.id:<38} {s.name[:30]:<30} {s.node_count:<7} {updated:<20}")


async def show_tree(session_id: str) -> None:
    """Print a session's tree."""
    _, session = await _load(session_id)
    if session is None:
        return

    print(f"\n=== {session.name} ===\n")
    for line in render_tree(session):
        print(line)


async def validate_session(session_id: str) -> bool:
    """Print the integrity report of a session."""
    _, session = await _load(session_id)
    if session is None:
        return False

    report = validate_node_integrity(session)
    if report.is_valid:
        print(f"✅ Session {session_id} is consistent ({len(session.nodes)} nodes)")
    else:
        print(f"❌ Session {session_id} has {len(report.errors)} problems:")
        for error in report.errors:
            print(f"   - {error}")
    return report.is_valid


async def compress_session(session_id: str) -> None:
    """Compress one batch of a stored session's history."""
    from .context import CompressionEngine
    from .llm import LLMSender

    manager, session = await _load(session_id)
    if session is None:
        return

    settings = get_settings()
    engine = CompressionEngine(LLMSender(settings), settings=settings)
    if await engine.manual_compress(session):
        await manager.save_session(session)
        print(f"✅ Compressed session {session_id}")
    else:
        print(f"ℹ️  Nothing compressed for session {session_id}")


def show_config(check: bool) -> None:
    """Show current configuration."""
    settings = get_settings()

    def mask(value: str) -> str:
        if not value:
            return "(not set)"
        return value[:4] + "..." + value[-4:] if len(value) > 10 else "****"

    print("\n=== ii-chat-context Configuration ===\n")

    print("Application:")
    print(f"  Name: {settings.app_name}")
    print(f"  Debug: {settings.debug}")
    print(f"  Log Level: {settings.log_level}")

    print("\nDatabase:")
    print(f"  URL: {settings.database_url}")

    cm = settings.context_management
    print("\nContext Management:")
    print(f"  Enabled: {cm.enabled}")
    print(f"  Max Context Tokens: {cm.max_context_tokens}")
    print(f"  Retained Characters: {cm.retained_characters}")

    cc = settings.context_compression
    print("\nCompression:")
    print(f"  Enabled: {cc.enabled}")
    print(f"  Trigger Mode: {cc.trigger_mode}")
    print(f"  Token Threshold: {cc.token_threshold}")
    print(f"  Count Threshold: {cc.count_threshold}")
    print(f"  Min History / Protect / Batch: {cc.min_history_count} / {cc.protect_recent_count} / {cc.compress_count}")
    print(f"  Summary Role: {cc.summary_role}")
    if cc.summary_model:
        print(f"  Summary Model: {cc.summary_model.profile_id}/{cc.summary_model.model_id}")

    print("\nLLM Profiles:")
    if not settings.profiles:
        print("  (none)")
    for profile in settings.profiles:
        state = "enabled" if profile.enabled else "disabled"
        models = ", ".join(m.id for m in profile.models) or "(no models)"
        print(f"  {profile.id} [{profile.provider}, {state}] key={mask(profile.api_key)} models={models}")

    if check:
        print("\n=== Configuration Check ===\n")
        errors = []
        warnings = []

        if not settings.enabled_profiles:
            errors.append("At least one enabled LLM profile is required")
        for profile in settings.enabled_profiles:
            if not profile.api_key:
                warnings.append(f"Profile {profile.id} has no API key")
            if not profile.models:
                warnings.append(f"Profile {profile.id} lists no models")

        if cm.enabled and cm.max_context_tokens <= 0:
            warnings.append("Context management is enabled but MAX_CONTEXT_TOKENS is 0")
        if cc.enabled and cc.protect_recent_count >= cc.count_threshold and cc.trigger_mode != "token":
            warnings.append("PROTECT_RECENT_COUNT >= COUNT_THRESHOLD, count-based compression rarely runs")

        if errors:
            print("❌ Errors:")
            for e in errors:
                print(f"   - {e}")

        if warnings:
            print("⚠️  Warnings:")
            for w in warnings:
                print(f"   - {w}")

        if not errors and not warnings:
            print("✅ Configuration looks good!")
        elif not errors:
            print("\n✅ Configuration is valid (with warnings)")
        else:
            print("\n❌ Configuration has errors")


if __name__ == "__main__":
    main()
