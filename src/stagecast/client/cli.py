"""Command-line participant: join a broadcast as host or viewer.

Lines typed on stdin are sent as chat. Lines starting with ``/`` are
commands::

    /request            ask the host to join Q&A (viewer)
    /approve <viewer>   let a viewer on stage (host)
    /deny <viewer>      decline a Q&A request (host)
    /mute <user>        mute a participant (host)
    /unmute <user>      unmute a participant (host)
    /end                end the broadcast (host)
    /retry              reconnect after giving up
    /peers              print the connected participants
    /quit               leave
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import threading
from typing import Any, TextIO

from .config import get_client_settings
from .orchestrator import ConnectionOrchestrator, ParticipantContext
from .states import InvalidTransition, NotConnectedError


logger = logging.getLogger(__name__)

_TARGETED = {
    "approve": "approve",
    "deny": "deny",
    "mute": "mute",
    "unmute": "unmute",
}


async def run_command(orchestrator: ConnectionOrchestrator, line: str) -> bool:
    """Apply one input line. Returns ``False`` when the participant should leave."""

    line = line.strip()
    if not line:
        return True
    if not line.startswith("/"):
        await orchestrator.send_chat(line)
        return True

    command, _, argument = line[1:].partition(" ")
    argument = argument.strip()
    try:
        if command == "quit":
            return False
        if command == "request":
            await orchestrator.request_qa()
        elif command in _TARGETED:
            if not argument:
                print(f"usage: /{command} <participant>")
                return True
            await getattr(orchestrator, _TARGETED[command])(argument)
        elif command == "end":
            await orchestrator.end_session()
        elif command == "retry":
            await orchestrator.retry()
        elif command == "peers":
            print(", ".join(orchestrator.known_peers) or "(nobody)")
        else:
            print(f"unknown command: /{command}")
    except (NotConnectedError, InvalidTransition) as exc:
        print(f"cannot {command} now: {exc}")
    return True


def start_stdin_reader(
    loop: asyncio.AbstractEventLoop, queue: asyncio.Queue[str | None], stream: TextIO | None = None
) -> threading.Thread:
    """Feed lines from *stream* into *queue* from a daemon thread.

    The thread may stay blocked in ``readline`` after the session ends; being a
    daemon it does not keep the process alive. ``None`` marks end of input.
    """

    source = stream if stream is not None else sys.stdin

    def read_lines() -> None:
        for line in iter(source.readline, ""):
            loop.call_soon_threadsafe(queue.put_nowait, line)
        loop.call_soon_threadsafe(queue.put_nowait, None)

    thread = threading.Thread(target=read_lines, daemon=True, name="stagecast-stdin")
    thread.start()
    return thread


async def run(args: argparse.Namespace) -> int:
    from .media import MediaPlayerProvider, aiortc_transport_factory

    settings = get_client_settings()
    if args.url:
        settings = settings.model_copy(update={"service_url": args.url})

    if args.role == "host":
        context = ParticipantContext.host(args.identity, args.name)
    else:
        context = ParticipantContext.viewer(args.identity, args.host, args.name)

    finished = asyncio.Event()

    def on_stream(remote: str, stream: Any) -> None:
        print(f"* receiving {getattr(stream, 'kind', 'media')} from {remote}")

    orchestrator = ConnectionOrchestrator(
        context,
        transport_factory=aiortc_transport_factory,
        media_provider=MediaPlayerProvider(args.media, format=args.media_format) if args.media else None,
        settings=settings,
        notify=lambda message: print(f"* {message}"),
        on_stream=on_stream,
        on_session_closed=finished.set,
    )

    lines: asyncio.Queue[str | None] = asyncio.Queue()
    start_stdin_reader(asyncio.get_running_loop(), lines)
    await orchestrator.start()
    ended = asyncio.create_task(finished.wait())
    seen = 0
    try:
        while True:
            getter = asyncio.create_task(lines.get())
            done, _ = await asyncio.wait({getter, ended}, timeout=1.0, return_when=asyncio.FIRST_COMPLETED)
            for entry in orchestrator.chat_log[seen:]:
                print(f"<{entry.sent_by or entry.sender}> {entry.text}")
            seen = len(orchestrator.chat_log)
            if getter not in done:
                getter.cancel()
                if ended in done:
                    break
                continue
            line = getter.result()
            if line is None or not await run_command(orchestrator, line):
                break
    finally:
        ended.cancel()
        await orchestrator.close()
    return 0


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="stagecast-participant", description=__doc__,
                                     formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("role", choices=["host", "viewer"])
    parser.add_argument("identity", help="Unique participant identity")
    parser.add_argument("--host", help="Identity of the host whose broadcast to join (viewers)")
    parser.add_argument("--name", default=None, help="Display name shown next to chat messages")
    parser.add_argument("--url", default=None, help="Signaling URL; defaults to STAGECAST_SERVICE_URL")
    parser.add_argument("--media", default=None, help="Capture source for ffmpeg, e.g. /dev/video0")
    parser.add_argument("--media-format", default=None, help="ffmpeg input format, e.g. v4l2")
    parser.add_argument("--log-level", default="WARNING", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    args = parser.parse_args(argv)
    if args.role == "viewer" and not args.host:
        parser.error("viewers must pass --host")
    return args


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv if argv is not None else sys.argv[1:])
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.info("interrupted")
        return 130
