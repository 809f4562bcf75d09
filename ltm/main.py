"""
Command-line entry point for the LTM engine.

Subcommands:
  chat      Interactive chat with memory-augmented streaming replies
  ingest    Store a memory
  retrieve  Show the memories most similar to a query
  clear     Wipe long-term memory

SETUP:
1. Copy .env.example to .env and fill in secrets (if any)
2. Copy config.yaml.example to config.yaml and set your model
3. Install dependencies:
   pip install -e ".[llama]"
"""

import argparse
import asyncio
import base64
import logging
import sys

from .api import MemoryEngine
from .config import Config, config
from .llm.base import ChatTurn
from .orchestrator import PromptPayload

logger = logging.getLogger("ltm.main")

EXIT_COMMANDS = {"/exit", "/quit"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ltm",
        description="Persona-aware long-term memory engine",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    chat = subparsers.add_parser("chat", help="Interactive chat session")
    chat.add_argument("--persona", default=None, help="Persona name from config.yaml")
    chat.add_argument("--model", default=None, help="Override the persona's model")
    chat.add_argument("--image", default=None, help="Image file attached to the first message")
    chat.add_argument(
        "--session-mode",
        action="store_true",
        help="Let the engine keep the conversation instead of sending history each turn",
    )

    ingest = subparsers.add_parser("ingest", help="Store a memory")
    ingest.add_argument("text", help="Memory text")
    ingest.add_argument("--tags", default="", help="Comma-separated tags")
    ingest.add_argument("--persona", default="Global", help="Persona label")

    retrieve = subparsers.add_parser("retrieve", help="Search memories")
    retrieve.add_argument("query", help="Free-text query")
    retrieve.add_argument("--limit", type=int, default=5)
    retrieve.add_argument("--persona", default=None)
    retrieve.add_argument("--isolate", action="store_true", help="Restrict to persona + Global")

    clear = subparsers.add_parser("clear", help="Delete every memory")
    clear.add_argument("--yes", action="store_true", help="Confirm the wipe")

    return parser


def _read_image(path: str) -> str:
    with open(path, "rb") as f:
        return base64.b64encode(f.read()).decode("ascii")


async def run_chat(engine: MemoryEngine, cfg: Config, args: argparse.Namespace) -> bool:
    persona = cfg.get_persona(args.persona)
    model = args.model or persona.model
    if not model:
        logger.error("No model configured. Set app.default_model or pass --model.")
        return False

    result = await engine.create_session(model, persona.system_prompt, persona.context_size)
    if not result["success"]:
        logger.error(f"Could not start session: {result['error']}")
        return False

    print(f"Chatting as {persona.name} on {model}. Type /exit to quit.\n")
    history: list[ChatTurn] | None = None if args.session_mode else []
    image = _read_image(args.image) if args.image else None

    while True:
        text = (await asyncio.to_thread(input, "You: ")).strip()
        if not text:
            continue
        if text in EXIT_COMMANDS:
            return True

        payload = PromptPayload.for_persona(text, persona, image=image, history=history)
        image = None

        print(f"{persona.name}: ", end="", flush=True)
        replies: list[str] = []
        result = await engine.stream_response(
            payload,
            on_chunk=lambda chunk: print(chunk, end="", flush=True),
            on_done=replies.append,
            on_error=lambda message: print(f"[error] {message}", end=""),
        )
        print("\n")

        if history is not None and result["success"]:
            history.append(ChatTurn(role="user", content=text))
            history.append(ChatTurn(role="assistant", content=replies[0]))


async def run_command(args: argparse.Namespace) -> bool:
    """
    Run one subcommand against a freshly built engine.

    Returns:
        True if the command succeeded.
    """
    logger = config.setup_logging()

    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(f"Configuration error: {error}")
        return False

    if args.command == "clear" and not args.yes:
        print("Refusing to wipe long-term memory without --yes")
        return False

    engine = await MemoryEngine.create(config)
    try:
        if args.command == "chat":
            return await run_chat(engine, config, args)

        if args.command == "ingest":
            result = await engine.ingest(args.text, args.tags, args.persona)
            if result["success"]:
                print(f"Stored memory {result['id']}")

        elif args.command == "retrieve":
            result = await engine.retrieve(args.query, args.limit, args.persona, args.isolate)
            if result["success"]:
                if not result["results"]:
                    print("(no relevant memories)")
                for hit in result["results"]:
                    tags = ", ".join(hit["tags"]) or "general"
                    print(f"#{hit['id']} [{tags}] ({hit['persona']}, distance {hit['distance']:.3f}) {hit['text']}")

        else:
            result = await engine.clear()
            if result["success"]:
                print("Long-term memory wiped")

        if not result["success"]:
            print(f"Error: {result['error']}")
        return result["success"]

    finally:
        await engine.close()


def main(argv: list[str] | None = None):
    """Entry point for the application."""
    args = build_parser().parse_args(argv)

    try:
        success = asyncio.run(run_command(args))
        sys.exit(0 if success else 1)
    except (KeyboardInterrupt, EOFError):
        print("\nOperation cancelled by user")
        sys.exit(130)
    except Exception as e:
        print(f"\nFatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
