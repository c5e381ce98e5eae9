#!/usr/bin/env python3
"""
Follow a chat job from the terminal.

Submits a message (or attaches to an existing job) and prints the response
as it streams in. Useful for checking the job backend without the web UI.

Usage:
  # Submit a new message
  python scripts/follow_job.py send "Compare Samsung and SK hynix earnings"

  # Continue an existing conversation
  python scripts/follow_job.py send "And their dividends?" --session-id sess_123

  # Attach to a running job
  python scripts/follow_job.py resume job_abc --session-id sess_123

  # Attach to the first active job of the current user
  python scripts/follow_job.py active

  # Verbose logging
  python scripts/follow_job.py --verbose send "..."
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

# Add parent directory to path for local execution
sys.path.insert(0, str(Path(__file__).parent.parent))

import structlog

from chatstream.core.config import get_settings
from chatstream.core.exceptions import ChatStreamError
from chatstream.models import ModelConfig, StreamState
from chatstream.services.chat_stream import ChatStream

logger = structlog.get_logger()


class ResponsePrinter:
    """Prints only the part of the response not printed yet."""

    def __init__(self) -> None:
        self.printed = ""

    def __call__(self, state: StreamState) -> None:
        if state.response.startswith(self.printed):
            sys.stdout.write(state.response[len(self.printed) :])
        else:
            # Final text replaced the streamed chunks
            sys.stdout.write("\n---\n" + state.response)
        sys.stdout.flush()
        self.printed = state.response


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Follow a chat job")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    commands = parser.add_subparsers(dest="command", required=True)

    send = commands.add_parser("send", help="Submit a message and stream the reply")
    send.add_argument("message", help="Message to send")
    send.add_argument("--session-id", help="Conversation to continue")
    send.add_argument("--model", help="Model identifier (default from settings)")
    send.add_argument(
        "--no-retry",
        action="store_true",
        help="Fail immediately when the server is busy",
    )

    resume = commands.add_parser("resume", help="Attach to a running job")
    resume.add_argument("job_id", help="Job to follow")
    resume.add_argument("--session-id", help="Conversation used for fallback")

    commands.add_parser("active", help="Attach to the first active job")
    return parser.parse_args()


async def main() -> int:
    """Main execution function."""
    args = parse_args()

    # Configure logging
    if args.verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.INFO)

    settings = get_settings()

    def navigate(path: str) -> None:
        logger.error("Not authenticated, log in first", login_path=path)

    async with ChatStream(settings, navigate=navigate) as stream:
        stream.subscribe(ResponsePrinter())

        try:
            if args.command == "send":
                model_config = ModelConfig(
                    chat_service_type=settings.default_chat_service_type,
                    provider=settings.default_model_provider,
                    model=args.model or settings.default_model,
                )
                if args.no_retry:
                    await stream.send_message(
                        args.message, model_config, args.session_id
                    )
                else:
                    await stream.send_message_with_retry(
                        args.message, model_config, args.session_id
                    )
            elif args.command == "resume":
                task = stream.resume_polling(args.job_id, args.session_id)
                if task is not None:
                    await task
            else:
                job = await stream.resume_active_job()
                if job is None:
                    logger.info("No active job")
                    return 0
                if stream.background_task is not None:
                    await stream.background_task
        except ChatStreamError as e:
            sys.stdout.write("\n")
            logger.error("Chat job failed", **e.to_dict())
            return 1

        sys.stdout.write("\n")
        if stream.state.visualization:
            sys.stdout.write(json.dumps(stream.state.visualization, indent=2) + "\n")

    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
