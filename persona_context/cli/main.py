"""CLI: persona-context serve, init, summary, history, config validate."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from ..config import load_config, validate_config
from ..storage.sqlite import SQLiteStore

CONFIG_TEMPLATE = """\
# persona-context configuration
version: "0.1"
token_counter: estimate

context:
  max_pairs: 5
  window_token_budget: 8000
  safety_margin: 1000
  recent_message_lookback: 5
  max_addon_entries: 3

summarization:
  base_url: https://openrouter.ai/api/v1
  api_key_env: OPENROUTER_API_KEY
  model: mistralai/mistral-7b-instruct
  interval: 15
  max_tokens: 2500
  temperature: 0.3
  max_attempts: 3
  retry_backoff: 2.0

chat:
  base_url: https://openrouter.ai/api/v1
  api_key_env: OPENROUTER_API_KEY
  temperature: 0.7
  max_tokens: 1000
  generation_timeout: 120

default_plan: Guest Pass

storage:
  sqlite_path: .persona-context/store.db

extractor:
  url: ""
  timeout: 30

time_awareness:
  delay_threshold: 30

server:
  host: 127.0.0.1
  port: 5858
"""


def _get_store(config_path: str | None = None):
    config = load_config(config_path)
    return SQLiteStore(db_path=config.storage.sqlite_path), config


def cmd_serve(args):
    """Start the HTTP server."""
    try:
        import uvicorn
    except ImportError:
        print("Run: pip install uvicorn", file=sys.stderr)
        sys.exit(1)

    from ..engine import ChatEngine
    from ..server import create_app

    config = load_config(args.config)
    errors = validate_config(config)
    if errors:
        for err in errors:
            print(f"Config error: {err}", file=sys.stderr)
        sys.exit(1)

    host = args.host or config.server.host
    port = args.port or config.server.port
    app = create_app(ChatEngine(config=config))
    print(f"persona-context on {host}:{port} (store: {config.storage.sqlite_path})")
    uvicorn.run(
        app, host=host, port=port, log_level=args.log_level.lower(),
        timeout_graceful_shutdown=2,
    )


def cmd_init(args):
    """Write a default config file to the current directory."""
    output = Path.cwd() / "persona-context.yaml"
    if output.exists() and not args.force:
        print(f"Config file already exists: {output}", file=sys.stderr)
        print("Use --force to overwrite.", file=sys.stderr)
        sys.exit(1)

    output.write_text(CONFIG_TEMPLATE)
    print(f"Created {output}")
    print()
    print("Next steps:")
    print("  1. Export your key:   export OPENROUTER_API_KEY=...")
    print("  2. Validate config:   persona-context config validate")
    print("  3. Start the server:  persona-context serve")


def cmd_summary(args):
    """Show the automatic summary of a conversation."""
    store, _ = _get_store(args.config)
    try:
        summary = store.get_automatic_summary(args.conversation_id)
        boundary = store.get_boundary(args.conversation_id)
    finally:
        store.close()

    if summary is None:
        print(f"No summary yet for {args.conversation_id}.")
        return

    print(f"Title:     {summary.title}")
    print(f"Boundary:  AI message {boundary}")
    print(f"Updated:   {summary.updated_at:%Y-%m-%d %H:%M}")
    print(f"Keywords:  {', '.join(summary.keywords)}")
    print()
    print(summary.prose)


def cmd_history(args):
    """Print the stored messages of a conversation."""
    store, _ = _get_store(args.config)
    try:
        history = store.get_history(args.conversation_id)
    finally:
        store.close()

    if not history:
        print(f"No messages for {args.conversation_id}.")
        return

    if args.limit:
        history = history[-args.limit:]
    for msg in history:
        marker = " (pending)" if msg.is_placeholder else ""
        print(f"#{msg.ordinal:<4} {msg.role:<4} {msg.created_at:%Y-%m-%d %H:%M}{marker}")
        print(f"      {msg.content}")


def cmd_config_validate(args):
    """Validate config file."""
    try:
        config = load_config(args.config)
    except Exception as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)

    errors = validate_config(config)
    if errors:
        print("Config validation errors:")
        for err in errors:
            print(f"  - {err}")
        sys.exit(1)
    else:
        print("Config is valid.")
        print(f"  Summary model: {config.summarization.model} (every {config.summarization.interval} AI messages)")
        print(f"  Window: {config.context.max_pairs} pairs, {config.context.window_token_budget:,} tokens")
        print(f"  Plans: {', '.join(config.plans)} (default: {config.default_plan})")
        print(f"  Storage: {config.storage.sqlite_path}")


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(
        prog="persona-context",
        description="Conversation context assembly and auto-summarization for character chat",
    )
    parser.add_argument("--config", "-c", help="Path to config file")
    parser.add_argument(
        "--log-level", default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )

    subparsers = parser.add_subparsers(dest="command")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the HTTP server")
    serve_parser.add_argument("--host", help="Bind host (default from config)")
    serve_parser.add_argument("--port", "-p", type=int, help="Bind port (default from config)")

    # init
    init_parser = subparsers.add_parser("init", help="Write a default config file")
    init_parser.add_argument("--force", action="store_true", help="Overwrite existing config")

    # summary
    summary_parser = subparsers.add_parser("summary", help="Show a conversation's automatic summary")
    summary_parser.add_argument("conversation_id", help="Conversation id")

    # history
    history_parser = subparsers.add_parser("history", help="Show a conversation's messages")
    history_parser.add_argument("conversation_id", help="Conversation id")
    history_parser.add_argument("--limit", "-n", type=int, help="Only the last N messages")

    # config validate
    config_parser = subparsers.add_parser("config", help="Config operations")
    config_sub = config_parser.add_subparsers(dest="config_command")
    config_sub.add_parser("validate", help="Validate config file")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "init":
        cmd_init(args)
    elif args.command == "summary":
        cmd_summary(args)
    elif args.command == "history":
        cmd_history(args)
    elif args.command == "config":
        if args.config_command == "validate":
            cmd_config_validate(args)
        else:
            print("Usage: persona-context config validate")
            sys.exit(1)


if __name__ == "__main__":
    main()
