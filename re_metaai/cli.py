"""Interactive command line interface for Meta AI conversations."""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional, Sequence

from .config import DEFAULT_CONFIG_PATH
from .errors import MetaAIError
from .sync_metaai import SyncMetaAI

# Exit commands recognised by the CLI.
EXIT_COMMANDS = {"exit", "quit", "q"}
NEW_CONVERSATION_COMMANDS = {"new", "/new"}
RESET_SESSION_COMMANDS = {"reset", "/reset"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="re-metaai",
        description="Chat with Meta AI from the terminal.",
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG_PATH,
        help="Path to config.ini (default: %(default)s)",
    )
    parser.add_argument(
        "--no-cache",
        action="store_true",
        help="Ignore the cached session and acquire a fresh one",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=30.0,
        help="Seconds to wait for a streamed answer (default: %(default)s)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "message",
        nargs="*",
        help="Send a single message and exit instead of starting the chat loop",
    )
    return parser


def handle_command(user_input: str, metaai: SyncMetaAI) -> Optional[bool]:
    """Handle a control command.

    Returns ``False`` to leave the chat, ``True`` when the input was a command
    that has been handled, and ``None`` when it should be sent as a message.
    """

    lowered = user_input.strip().lower()
    if lowered in EXIT_COMMANDS:
        print("Goodbye!")
        return False

    if lowered in NEW_CONVERSATION_COMMANDS:
        metaai.reset_conversation()
        print("Started a new conversation.")
        return True

    if lowered in RESET_SESSION_COMMANDS:
        metaai.reset_session()
        metaai.reset_conversation()
        print("Session cleared; a fresh one will be acquired on the next message.")
        return True

    return None


def chat_loop(metaai: SyncMetaAI) -> None:
    print("Type 'exit', 'quit', or 'q' to leave the chat.")
    print("Use 'new' for a fresh conversation or 'reset' to drop the cached session.")

    while True:
        try:
            prompt = input("You> ")
        except EOFError:
            print("\nEOF received. Exiting chat.")
            break

        stripped_prompt = prompt.strip()
        if not stripped_prompt:
            continue

        handled = handle_command(stripped_prompt, metaai)
        if handled is False:
            break
        if handled:
            continue

        try:
            response = metaai.prompt(stripped_prompt)
        except MetaAIError as exc:
            print(f"Encountered an error while chatting: {exc}")
            continue

        print(f"AI> {response.message}")
        for source in response.sources:
            title = source.get("title") or source.get("link") or ""
            if title:
                print(f"  source: {title}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point for the interactive CLI."""

    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    with SyncMetaAI(config_path=args.config, timeout=args.timeout) as metaai:
        if args.no_cache:
            metaai.reset_session()

        if args.message:
            try:
                response = metaai.prompt(" ".join(args.message))
            except MetaAIError as exc:
                print(f"Error: {exc}", file=sys.stderr)
                return 1
            print(response.message)
            return 0

        chat_loop(metaai)
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nInterrupted. Goodbye!")
        sys.exit(1)
