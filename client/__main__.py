from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
from datetime import datetime
from pathlib import Path

from shared.join_window import classify_join_state, is_joinable
from shared.protocol import DEFAULT_HTTP_PORT

from .api_client import MeetingsApiError, MeetingsClient
from .call_session import CallDetails, CallSession
from .devices import DeviceMedia, DeviceMediaSource
from .signaling_client import SignalingClient

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="SkillSwap class call client")
    parser.add_argument("meeting_id", help="Meeting to join")
    parser.add_argument("class_index", type=int, help="Zero-based class index within the meeting")
    parser.add_argument(
        "--server-url",
        default=os.environ.get("SKILLSWAP_SERVER_URL", f"http://127.0.0.1:{DEFAULT_HTTP_PORT}"),
        help="Base URL of the SkillSwap server (env SKILLSWAP_SERVER_URL)",
    )
    parser.add_argument(
        "--token",
        default=os.environ.get("SKILLSWAP_TOKEN"),
        help="Bearer token for the signed-in user (env SKILLSWAP_TOKEN)",
    )
    parser.add_argument("--camera", type=int, default=0, help="Camera device index")
    parser.add_argument("--microphone", type=int, default=None, help="Microphone device index")
    parser.add_argument(
        "--status-interval",
        type=float,
        default=30.0,
        help="Seconds between countdown log lines while the call is active",
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


async def run_call(args: argparse.Namespace) -> int:
    async with MeetingsClient(args.server_url, args.token) as meetings:
        try:
            reveal = await meetings.reveal_room(args.meeting_id, args.class_index)
        except MeetingsApiError as exc:
            logger.error("Cannot join class: %s", exc.message)
            return 1

        details = CallDetails.from_dict(reveal)
        # advisory only; the server already enforced the window
        state = classify_join_state(datetime.fromisoformat(reveal["scheduled_at"]), "upcoming")
        if not is_joinable(state):
            logger.warning("Local clock places this class outside its join window (%s)", state.value)

        session = CallSession(
            details,
            media_source=DeviceMediaSource(device_index=args.camera, audio_device=args.microphone),
            signaling_factory=lambda on_message, on_disconnect: SignalingClient(
                args.server_url,
                args.token,
                on_message,
                on_disconnect=on_disconnect,
            ),
            meetings=meetings,
        )

        loop = asyncio.get_running_loop()

        def _signal_handler() -> None:
            logger.info("Interrupted; ending the call")
            loop.create_task(session.end_now())

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, _signal_handler)
            except NotImplementedError:
                pass

        await session.run()
        if session.error:
            logger.error("%s", session.error)
            return 1
        logger.info("Waiting for the other participant in room %s", details.room_id)

        ended = asyncio.create_task(session.wait())
        while not ended.done():
            await asyncio.wait({ended}, timeout=max(1.0, args.status_interval))
            remaining = session.time_left()
            if remaining is not None and not ended.done():
                minutes, seconds = divmod(int(remaining), 60)
                media = session.media
                level = media.input_level if isinstance(media, DeviceMedia) else 0.0
                logger.info("Time left: %02d:%02d (mic level %.3f)", minutes, seconds, level)

        result = ended.result()
        if session.error:
            logger.error("%s", session.error)
            return 1
        if result is not None:
            logger.info(
                "Class finished: %d seconds (%s)",
                result.duration_sec,
                "reported" if result.reported else "not reported, assumed full length",
            )
        return 0


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    if not args.token:
        parser.error("--token or SKILLSWAP_TOKEN is required")
    configure_logging(args)
    try:
        raise SystemExit(asyncio.run(run_call(args)))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
