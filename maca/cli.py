#!/usr/bin/env python3
"""
MACA Avatar Pipeline - Command Line Interface

Commands:
    serve   - Run the collaborator service (speech, chat, vision, sessions)
    voice   - Start a push-to-talk avatar session
    chat    - Start a typed avatar conversation
    check   - Validate configuration

Usage:
    python -m maca.cli serve
    python -m maca.cli voice
    python -m maca.cli chat --mode FULL
    python -m maca.cli check --server

For help on a specific command:
    python -m maca.cli <command> --help
"""

import argparse
import asyncio
import sys
from typing import Optional

from maca.config import settings
from maca.core.providers import AvatarMode
from maca.errors import MacaError, PipelineError
from maca.logger import get_logger, init_logging
from maca.messages import msg

# Initialize logging
init_logging()
logger = get_logger(__name__)


def _print_status(status: str) -> None:
    print(f"   [{status}]")


async def _read_line(prompt: str) -> str:
    """Read a line from stdin without blocking the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, input, prompt)


def _agent_config(args: argparse.Namespace):
    from maca.realtime import AvatarAgentConfig

    config = AvatarAgentConfig()
    if args.mode:
        config.mode = AvatarMode.parse(args.mode)
    if args.avatar_id:
        config.avatar_id = args.avatar_id
    return config


def _print_session_stats(agent) -> None:
    stats = agent.stats
    print("\n" + "-" * 60)
    print("📊 Session Statistics:")
    print(f"   Turns started: {stats['pipeline']['turns']}")
    print(f"   History messages: {stats['pipeline']['history_messages']}")
    print(f"   Final state: {stats['session']['state']}")
    print()


# ============================================================================
# serve
# ============================================================================

def cmd_serve(args: argparse.Namespace) -> int:
    """
    Run the collaborator service with uvicorn.
    """
    import uvicorn

    try:
        settings.validate_server()
    except ValueError as e:
        print(f"⚠️  {e}")
        print("   Routes for unconfigured vendors will return errors.")

    host = args.host or settings.server.host
    port = args.port or settings.server.port
    print(f"🚀 Collaborator service on http://{host}:{port}")

    uvicorn.run(
        "api_server:app",
        host=host,
        port=port,
        reload=args.reload,
    )
    return 0


# ============================================================================
# voice
# ============================================================================

async def _voice_session(args: argparse.Namespace) -> int:
    from maca.realtime import AvatarAgent

    agent = AvatarAgent(_agent_config(args), on_status=_print_status)
    if agent.session.mode is AvatarMode.FULL:
        print("❌ Push-to-talk needs CUSTOM mode. Use 'chat --mode FULL' instead.")
        await agent.stop()
        return 1

    try:
        await agent.start()
        print("\nPress Enter to start recording, Enter again to send.")
        print("Type 'q' then Enter to quit.\n")

        while True:
            line = (await _read_line("")).strip().lower()
            if line in ("q", "quit", "/quit"):
                break

            if agent.recorder.is_recording:
                result = await agent.recorder.stop_recording()
                if result is not None:
                    print(f"You: {result.transcript}")
                    print(f"MACA: {result.reply}\n")
            else:
                agent.recorder.start_recording()
                print(f"🎤 {msg('status.listening')} (Enter to stop)")

        _print_session_stats(agent)
        return 0
    finally:
        await agent.stop()


def cmd_voice(args: argparse.Namespace) -> int:
    """
    Start a push-to-talk avatar session.
    """
    print("\n" + "=" * 60)
    print("🎙️  MACA - Voice Session")
    print("=" * 60)

    try:
        return asyncio.run(_voice_session(args))
    except KeyboardInterrupt:
        print("\n\n👋 Voice session interrupted.")
        return 0
    except MacaError as e:
        print(f"❌ Voice session failed: {e}")
        return 1
    except Exception as e:
        print(f"❌ Voice session failed: {e}")
        logger.exception("Voice session error")
        return 1


# ============================================================================
# chat
# ============================================================================

async def _chat_turn(agent, text: str) -> None:
    if agent.session.mode is AvatarMode.FULL:
        await agent.session.send_text(text)
        return

    try:
        result = await agent.pipeline.process_text_input(text)
    except PipelineError as e:
        print(f"❌ {e}\n")
        return
    if result is not None:
        print(f"MACA: {result.reply}\n")


async def _say(agent, text: str) -> None:
    if not text:
        return
    if agent.session.mode is AvatarMode.FULL:
        await agent.session.repeat(text)
        return
    try:
        await agent.pipeline.speak_text(text)
    except PipelineError as e:
        print(f"❌ {e}\n")


async def _chat_session(args: argparse.Namespace) -> int:
    from maca.realtime import AvatarAgent

    agent = AvatarAgent(_agent_config(args), on_status=_print_status if args.verbose else None)

    try:
        await agent.start()
        print("Type a message below. Commands:")
        print("  /reset    - Clear conversation history")
        print("  /say TEXT - Have the avatar speak TEXT verbatim")
        print("  /repeat   - Repeat the last reply (CUSTOM mode)")
        print("  /stop     - Interrupt the avatar")
        print("  /quit     - Exit chat")
        print("-" * 60)

        while True:
            user_input = (await _read_line("You: ")).strip()
            if not user_input:
                continue

            command = user_input.lower()
            if command == "/quit":
                print("\n👋 Goodbye!")
                break
            elif command == "/reset":
                agent.pipeline.reset_conversation()
                print(f"🗑️  {msg('memory.cleared')}\n")
            elif command == "/stop":
                await agent.session.interrupt()
            elif command.startswith("/say "):
                await _say(agent, user_input[5:].strip())
            elif command == "/repeat":
                replies = [m for m in agent.pipeline.history if m.role == "assistant"]
                if replies:
                    await _say(agent, replies[-1].content)
            else:
                await _chat_turn(agent, user_input)

        _print_session_stats(agent)
        return 0
    finally:
        await agent.stop()


def cmd_chat(args: argparse.Namespace) -> int:
    """
    Start a typed avatar conversation.
    """
    print("\n" + "=" * 60)
    print("💬 MACA - Typed Conversation")
    print("=" * 60)

    try:
        return asyncio.run(_chat_session(args))
    except (KeyboardInterrupt, EOFError):
        print("\n\n👋 Goodbye!")
        return 0
    except MacaError as e:
        print(f"❌ Chat failed: {e}")
        return 1
    except Exception as e:
        print(f"❌ Chat failed: {e}")
        logger.exception("Chat error")
        return 1


# ============================================================================
# check
# ============================================================================

async def _fetch_backend_health() -> dict:
    from maca.core.clients import BackendHttp

    async with BackendHttp() as http:
        result = await http.get("/api/health", MacaError)
        return result.json(MacaError)


def cmd_check(args: argparse.Namespace) -> int:
    """
    Validate configuration for the client pipeline or the collaborator service.
    """
    print("\n🔧 Checking Configuration")
    print("-" * 50)

    passed = 0
    failed = 0

    if args.server:
        checks = [
            ("ElevenLabs", settings.elevenlabs.validate),
            ("Gemini", settings.gemini.validate),
            ("LiveAvatar", settings.liveavatar.validate),
        ]
    else:
        checks = [
            ("Pipeline", settings.pipeline.validate),
            ("Backend", settings.validate_client),
        ]

    for i, (name, check) in enumerate(checks, start=1):
        print(f"\n{i}. {name}...")
        try:
            check()
            print("   ✅ OK")
            passed += 1
        except ValueError as e:
            print(f"   ❌ {e}")
            failed += 1

    if not args.server:
        print(f"\n{len(checks) + 1}. Collaborator service at {settings.backend.base_url}...")
        try:
            health = asyncio.run(_fetch_backend_health())
            services = health.get("services", {})
            missing = [name for name, ok in services.items() if not ok]
            if missing:
                print(f"   ⚠️  Reachable, unconfigured: {', '.join(missing)}")
            else:
                print("   ✅ Reachable")
            passed += 1
        except Exception as e:
            print(f"   ❌ Unreachable: {e}")
            failed += 1

    print("\n" + "-" * 50)
    print(f"Results: {passed} passed, {failed} failed")
    return 0 if failed == 0 else 1


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser with all commands."""
    parser = argparse.ArgumentParser(
        prog="maca",
        description="MACA voice/video avatar pipeline CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  Run the collaborator service:
    python -m maca.cli serve --port 8000

  Talk to the avatar:
    python -m maca.cli voice
    python -m maca.cli chat
    python -m maca.cli chat --mode FULL

  Configuration:
    python -m maca.cli check
    python -m maca.cli check --server
        """
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose output"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Serve command
    serve_parser = subparsers.add_parser(
        "serve",
        help="Run the collaborator service"
    )
    serve_parser.add_argument("--host", help=f"Bind address (default: {settings.server.host})")
    serve_parser.add_argument(
        "--port", "-p",
        type=int,
        help=f"Port (default: {settings.server.port})"
    )
    serve_parser.add_argument(
        "--reload",
        action="store_true",
        help="Reload on code changes"
    )
    serve_parser.set_defaults(func=cmd_serve)

    # Session commands share mode and avatar options
    for name, help_text, func in (
        ("voice", "Start a push-to-talk avatar session", cmd_voice),
        ("chat", "Start a typed avatar conversation", cmd_chat),
    ):
        session_parser = subparsers.add_parser(name, help=help_text)
        session_parser.add_argument(
            "--mode", "-m",
            choices=[mode.value for mode in AvatarMode],
            type=str.upper,
            help=f"Avatar mode (default: {settings.liveavatar.mode})"
        )
        session_parser.add_argument(
            "--avatar-id",
            help="Avatar to render (default: LIVEAVATAR_AVATAR_ID)"
        )
        session_parser.set_defaults(func=func)

    # Check command
    check_parser = subparsers.add_parser(
        "check",
        help="Validate configuration"
    )
    check_parser.add_argument(
        "--server",
        action="store_true",
        help="Check vendor keys for the collaborator service instead of the client"
    )
    check_parser.set_defaults(func=cmd_check)

    return parser


def main(argv: Optional[list] = None) -> int:
    """Main entry point for the CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    if args.verbose:
        import logging
        logging.getLogger().setLevel(logging.DEBUG)

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
