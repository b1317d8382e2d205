from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal

from pathlib import Path

import uvicorn

from shared.protocol import DEFAULT_HTTP_PORT, ROOM_GRACE_SECONDS

from server.auth import TokenVerifier
from server.database import DEFAULT_DATABASE_URL, create_db_engine, init_db
from server.http_api import SkillSwapApi
from server.room_registry import RoomRegistry

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="SkillSwap class-call server")
    parser.add_argument("--host", default="0.0.0.0", help="Host/IP to bind the HTTP server")
    parser.add_argument("--port", type=int, default=DEFAULT_HTTP_PORT, help="HTTP and WebSocket port")
    parser.add_argument(
        "--database-url",
        default=os.environ.get("SKILLSWAP_DATABASE_URL", DEFAULT_DATABASE_URL),
        help="SQLAlchemy database URL (env SKILLSWAP_DATABASE_URL)",
    )
    parser.add_argument(
        "--jwt-secret",
        default=os.environ.get("SKILLSWAP_JWT_SECRET"),
        help="Secret used to verify bearer tokens (env SKILLSWAP_JWT_SECRET)",
    )
    parser.add_argument(
        "--room-grace-seconds",
        type=float,
        default=ROOM_GRACE_SECONDS,
        help="Delay before an empty or ended room's state is dropped",
    )
    parser.add_argument(
        "--enforce-room-membership",
        action="store_true",
        help="Only let meeting participants join a signaling room",
    )
    parser.add_argument(
        "--cors-origin",
        action="append",
        default=[],
        help="Allowed browser origin; may be given more than once",
    )
    parser.add_argument(
        "--log-level",
        type=str.upper,
        default="INFO",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET"],
        help="Logging verbosity",
    )
    parser.add_argument("--log-file", type=Path, default=None, help="Optional path to a rotating log file")
    parser.add_argument("--log-max-bytes", type=int, default=5 * 1024 * 1024, help="Max size of the log file before rotation")
    parser.add_argument("--log-backup-count", type=int, default=5, help="Number of rotated log files to retain")
    return parser


def configure_logging(args: argparse.Namespace) -> None:
    log_handlers: list[logging.Handler] = [logging.StreamHandler()]
    if args.log_file:
        from logging.handlers import RotatingFileHandler

        args.log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            args.log_file,
            maxBytes=max(1024, args.log_max_bytes),
            backupCount=max(1, args.log_backup_count),
        )
        file_handler.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)s %(name)s: %(message)s"))
        log_handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, args.log_level, logging.INFO),
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        handlers=log_handlers,
        force=True,
    )


async def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    if not args.jwt_secret:
        parser.error("--jwt-secret or SKILLSWAP_JWT_SECRET is required")

    configure_logging(args)

    engine = create_db_engine(args.database_url)
    init_db(engine)
    registry = RoomRegistry(grace_seconds=args.room_grace_seconds)
    api = SkillSwapApi(
        engine,
        TokenVerifier(args.jwt_secret),
        registry=registry,
        enforce_room_membership=args.enforce_room_membership,
        cors_origins=args.cors_origin,
    )

    config = uvicorn.Config(api.app, host=args.host, port=args.port, log_level=args.log_level.lower())
    server = uvicorn.Server(config)

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    shutdown_requested = False

    def trigger_shutdown(source: str) -> bool:
        nonlocal shutdown_requested
        if shutdown_requested:
            logger.debug("Shutdown already in progress (source=%s)", source)
            return False
        shutdown_requested = True
        logger.info("%s initiated shutdown", source)
        try:
            loop.call_soon_threadsafe(stop_event.set)
        except RuntimeError:
            stop_event.set()
        return True

    def _signal_handler() -> None:
        trigger_shutdown("Shutdown signal")

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            # Signals aren't implemented on Windows for ProactorEventLoop; fallback to keyboard interrupt.
            pass

    server_task = asyncio.create_task(server.serve())
    logger.info("SkillSwap server listening on http://%s:%s", args.host, args.port)

    stop_waiter = asyncio.create_task(stop_event.wait())
    done, _ = await asyncio.wait({server_task, stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
    if server_task in done:
        # uvicorn exited on its own: startup failure or a signal it captured first
        stop_waiter.cancel()
        if server_task.exception() is not None:
            engine.dispose()
            server_task.result()
    else:
        logger.info("Shutdown signal processed; stopping services")

    try:
        await api.hub.disconnect_all()
    except Exception:
        logger.exception("Failed to close signaling connections during shutdown")

    server.should_exit = True
    try:
        await server_task
    except Exception:
        logger.exception("Error stopping HTTP server")

    engine.dispose()
    logger.info("Shutdown complete (%d rooms dropped)", len(registry))


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
