"""Main entry point for the Slack mention relay."""

import argparse
import asyncio
import logging
import signal
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from .config import Config, load_config
from .relay import Relay
from .services import get_db_service, init_db_service

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
MAX_LOG_SIZE = 1_000_000


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
    )

    # Reduce noise from libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


def add_file_logging(log_file: Optional[str]) -> None:
    """Mirror the log to a file, rotated once it passes 1 MB."""
    if not log_file:
        return

    path = Path(log_file).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)

    handler = RotatingFileHandler(path, maxBytes=MAX_LOG_SIZE, backupCount=1, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    logging.getLogger().addHandler(handler)
    logging.getLogger(__name__).info("--- Relay started ---")


def check_ready(config: Config, logger: logging.Logger) -> bool:
    if config.is_ready:
        return True
    logger.error("Not starting, missing required setting(s): %s", ", ".join(config.missing_credentials()))
    return False


def install_signal_handlers(signals: asyncio.Queue) -> None:
    """Route SIGHUP to a reload and SIGINT/SIGTERM to a shutdown."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGHUP, signals.put_nowait, "reload")
        loop.add_signal_handler(signal.SIGTERM, signals.put_nowait, "stop")
        loop.add_signal_handler(signal.SIGINT, signals.put_nowait, "stop")
    except (NotImplementedError, AttributeError):
        # No signal support on this platform; Ctrl+C still raises KeyboardInterrupt
        pass


async def run_with_reload(args, logger, config: Config, signals: Optional[asyncio.Queue] = None) -> None:
    """Run the relay, restarting it with fresh config on SIGHUP.

    Args:
        args: Parsed CLI arguments (``args.config`` is re-read on reload).
        logger: Logger for lifecycle messages.
        config: Config the first relay starts with.
        signals: Queue of "reload"/"stop" commands. Defaults to one fed by
            SIGHUP, SIGTERM and SIGINT.
    """
    if signals is None:
        signals = asyncio.Queue()
        install_signal_handlers(signals)

    relay = Relay(config)
    relay_task = asyncio.create_task(relay.run())

    try:
        while True:
            signal_task = asyncio.create_task(signals.get())
            done, _ = await asyncio.wait({relay_task, signal_task}, return_when=asyncio.FIRST_COMPLETED)

            if relay_task in done:
                signal_task.cancel()
                relay_task.result()
                return

            if signal_task.result() == "stop":
                logger.info("Received shutdown signal, exiting...")
                return

            logger.info("Reloading configuration from %s", args.config)
            try:
                new_config = load_config(args.config)
            except Exception as e:
                logger.error("Config reload failed, keeping current settings: %s", e)
                continue
            if not check_ready(new_config, logger):
                continue

            await relay.stop()
            await asyncio.gather(relay_task, return_exceptions=True)

            await init_db_service(new_config.relay.database_path)
            relay = Relay(new_config)
            relay_task = asyncio.create_task(relay.run())
            logger.info("Relay restarted with new configuration")

    finally:
        if not relay_task.done():
            await relay.stop()
            await asyncio.gather(relay_task, return_exceptions=True)


async def async_main(args, logger) -> int:
    """Async main function."""
    try:
        logger.info("Loading configuration from %s", args.config)
        config = load_config(args.config)
        add_file_logging(config.relay.log_file)

        if not check_ready(config, logger):
            return 1

        # Initialize database
        logger.info("Initializing state database at %s", config.relay.database_path)
        await init_db_service(config.relay.database_path)

        if args.once:
            logger.info("Running single catch-up pass...")
            processed = await Relay(config).run_once()
            logger.info("Processed %d missed mention(s)", processed)
        else:
            await run_with_reload(args, logger, config)

        return 0

    except FileNotFoundError as e:
        logger.error(str(e))
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception as e:
        logger.exception("Fatal error: %s", e)
        return 1
    finally:
        # Clean up database connection
        try:
            db = get_db_service()
            await db.close()
            logger.info("Database connection closed")
        except RuntimeError:
            # Database wasn't initialized (error during startup)
            pass


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Relay Slack mentions of one user to reminders and notifications",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                      # Run with default config.yaml
  %(prog)s -c myconfig.yaml     # Run with custom config
  %(prog)s -v                   # Run with verbose logging
  %(prog)s --once               # Catch up on missed mentions and exit

Send SIGHUP to reload the configuration without restarting.
        """,
    )

    parser.add_argument(
        "-c",
        "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose/debug logging",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one catch-up pass and exit (don't connect to the stream)",
    )

    args = parser.parse_args()

    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    try:
        return asyncio.run(async_main(args, logger))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
