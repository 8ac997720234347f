"""
Command line runner for a Colloquy live voice session.

Loads .env and the YAML config, sets up structured logging, validates the
configuration, then holds a live session on the local microphone and speaker
until SIGINT/SIGTERM or an unrecoverable failure.
"""

import argparse
import asyncio
import logging
import signal
import sys

from dotenv import load_dotenv

from colloquy.config import load_config, validate_config
from colloquy.core.errors import SessionError
from colloquy.core.models import SessionPhase, SessionSnapshot
from colloquy.core.session_supervisor import SessionSupervisor
from colloquy.logging_config import configure_logging, get_logger

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="colloquy",
        description="Hold a live duplex voice session with Gemini Live on the local audio devices.",
    )
    parser.add_argument(
        "--config",
        default="config/colloquy.yaml",
        help="Path to the YAML config (relative paths resolve against the project root)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Override the configured log level (debug|info|warning|error)",
    )
    return parser


async def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    load_dotenv()

    config = load_config(args.config)
    level_name = str(args.log_level or config.logging.level or "info").upper()
    configure_logging(log_level=getattr(logging, level_name, logging.INFO))

    errors, warnings = validate_config(config)
    if errors:
        logger.error("Configuration validation failed", errors=errors, warnings=warnings)
        return 2
    if warnings:
        logger.warning("Configuration warnings", warnings=warnings)

    supervisor = SessionSupervisor(config)
    shutdown_event = asyncio.Event()
    last_status = {"value": None}

    def on_state(snapshot: SessionSnapshot) -> None:
        if snapshot.status != last_status["value"]:
            last_status["value"] = snapshot.status
            logger.info(
                "Session status changed",
                status=snapshot.status.value,
                phase=snapshot.phase.value,
                error_message=snapshot.error_message,
            )
        if snapshot.phase == SessionPhase.FAILED:
            shutdown_event.set()

    supervisor.subscribe(on_state)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown_event.set)

    exit_code = 0
    try:
        await supervisor.connect()
        await shutdown_event.wait()
        if supervisor.state.phase == SessionPhase.FAILED and supervisor.state.error_message:
            exit_code = 1
    except SessionError as e:
        logger.error("Could not start live session", error=e.user_message)
        exit_code = 1
    except Exception as e:
        # e.g. PortAudioError while opening a device
        logger.error("Live session aborted", error=str(e), error_type=type(e).__name__, exc_info=True)
        exit_code = 1
    finally:
        await supervisor.disconnect()
    return exit_code


def run() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        pass
    finally:
        logger.info("Colloquy has shut down.")


if __name__ == "__main__":
    run()
