"""
roundsync command line entry point

Connects to a round server, logs every snapshot change and every crashed
round until interrupted.

Usage:
    roundsync --url https://game.example.com --wallet <address>
    python -m roundsync.main --log-level DEBUG --log-dir ./logs
"""

import argparse
import asyncio
import logging
import signal
import sys

from roundsync.client import RoundSyncClient
from roundsync.config import ClientConfig, ConfigError
from roundsync.models.round_snapshot import HistoryEntry, RoundSnapshot
from roundsync.services.logger import setup_logging
from roundsync.sources.connection_state import ConnectionState, ConnectionStatus

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="roundsync", description="Follow the current round of a crash-style game server"
    )
    parser.add_argument("--url", help="Socket.IO server URL (env: ROUNDSYNC_SERVER_URL)")
    parser.add_argument("--wallet", help="Wallet address (env: ROUNDSYNC_WALLET_ADDRESS)")
    parser.add_argument("--user-id", help="User id (env: ROUNDSYNC_USER_ID)")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Console log level (env: ROUNDSYNC_LOG_LEVEL)",
    )
    parser.add_argument("--log-dir", help="Directory for rotating log files (env: ROUNDSYNC_LOG_DIR)")
    return parser


def config_from_args(args: argparse.Namespace) -> ClientConfig:
    """Environment defaults, overridden by any flags given."""
    config = ClientConfig()
    if args.url:
        config.server_url = args.url
    if args.wallet:
        config.wallet_address = args.wallet
    if args.user_id:
        config.user_id = args.user_id
    if args.log_level:
        config.log_level = args.log_level
    if args.log_dir:
        config.log_dir = args.log_dir
    return config.validate()


def _log_snapshot(snapshot: RoundSnapshot | None) -> None:
    if snapshot is None:
        logger.info("No current round")
        return
    logger.debug(
        f"Round {snapshot.round_number} {snapshot.status.value} "
        f"x{snapshot.multiplier:.2f} wagered={snapshot.total_wagered} "
        f"players={snapshot.total_players} countdown={snapshot.countdown_ms}ms"
    )


def _log_crash(entry: HistoryEntry) -> None:
    logger.info(
        f"Round {entry.round_number} crashed at {entry.crash_multiplier:.2f}x "
        f"(wagered {entry.total_wagered}, {entry.total_players} players)"
    )


async def run(config: ClientConfig) -> int:
    client = RoundSyncClient(config)
    client.subscribe(_log_snapshot)
    client.subscribe_crashes(_log_crash)

    shutdown_event = asyncio.Event()

    def on_state_change(old: ConnectionState, new: ConnectionState) -> None:
        # Terminal: server-initiated disconnect or attempts exhausted
        if (
            new.status is ConnectionStatus.DISCONNECTED
            and old.status is not ConnectionStatus.DISCONNECTED
        ):
            shutdown_event.set()

    client.connection.on_state_change(on_state_change)
    loop = asyncio.get_running_loop()
    previous_handlers = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown_event.set)
        except NotImplementedError:
            # Windows event loops have no add_signal_handler
            previous_handlers[sig] = signal.signal(
                sig, lambda *_: loop.call_soon_threadsafe(shutdown_event.set)
            )

    logger.info(f"Connecting to {config.server_url}")
    connect_task = asyncio.create_task(client.connect())
    shutdown_task = asyncio.create_task(shutdown_event.wait())
    await asyncio.wait({connect_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)

    exit_code = 0
    if connect_task.done() and not connect_task.result():
        logger.error(f"Could not connect: {client.connection_state.last_error}")
        exit_code = 1
    elif not shutdown_event.is_set():
        await shutdown_task

    logger.info("Shutting down...")
    connect_task.cancel()
    shutdown_task.cancel()
    await client.close()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.remove_signal_handler(sig)
        except NotImplementedError:
            signal.signal(sig, previous_handlers.get(sig, signal.SIG_DFL))
    return exit_code


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = config_from_args(args)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    setup_logging({"log_level": config.log_level, "log_dir": config.log_dir})
    try:
        return asyncio.run(run(config))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
