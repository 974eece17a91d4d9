"""
s2-cli - Main entry point.

Commands:
- config set: store the access token
- append: stream newline-delimited records from a file or stdin
- read: write records of a stream to a file or stdout
- fence / trim: submit a single command record

Usage:
    s2-cli config set --token $TOKEN
    cat events.log | s2-cli append my-basin events
    s2-cli read my-basin events --start-seq-num 0 --limit-count 100

Configuration comes from S2_* environment variables and the config file.
See config.py for all available settings.

Invariants:
    - Record output goes to stdout (or --output); everything else to stderr
    - SIGINT/SIGTERM cancel the running session; that is a clean stop
    - Exit status is 1 only for errors, never for a cancelled session

How to change safely:
    - Add new commands, don't change existing flags
    - Keep stdout free of diagnostics so output can be piped
"""

from __future__ import annotations

import argparse
import asyncio
import base64
import binascii
import logging
import sys
from typing import BinaryIO, Optional, Sequence

import httpx
import json_log_formatter
from pydantic import ValidationError

from .config import S2Settings, config_path, create_config, resolve_token
from .errors import RecordWrite, S2CliError, SessionAborted
from .session.cancel import CancellationToken, install_signal_handlers
from .session.metrics import SessionMetrics
from .session.source import open_record_source
from .stream import StreamService
from .transport.http import HttpStreamHandle
from .types import (
    FenceCommand,
    FirstSeqNum,
    NextSeqNum,
    ReadBatch,
    SequencedCommand,
    TrimCommand,
    validate_fencing_token,
)

logger = logging.getLogger(__name__)


def setup_logging(settings: S2Settings) -> None:
    """Configure logging based on settings.

    Args:
        settings: CLI settings
    """
    level = getattr(logging, settings.log_level.upper(), logging.WARNING)

    if settings.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def fencing_token_arg(value: str) -> bytes:
    """Parse a base64 fencing token argument; "" is the empty token."""
    try:
        token = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise argparse.ArgumentTypeError(f"invalid base64 fencing token: {e}") from e
    try:
        return validate_fencing_token(token)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def seq_num_arg(value: str) -> int:
    try:
        seq_num = int(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"invalid seq num: {value!r}") from e
    if seq_num < 0:
        raise argparse.ArgumentTypeError(f"seq num must be non-negative, got {seq_num}")
    return seq_num


def positive_int_arg(value: str) -> int:
    try:
        number = int(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"invalid number: {value!r}") from e
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be positive, got {number}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="s2-cli", description="Stream records to and from S2")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # config set
    config_parser = subparsers.add_parser("config", help="Manage CLI configuration")
    config_sub = config_parser.add_subparsers(dest="config_command", required=True)
    set_parser = config_sub.add_parser("set", help="Store the access token")
    set_parser.add_argument("--token", required=True, help="Access token")

    def add_stream_args(p: argparse.ArgumentParser) -> None:
        p.add_argument("basin", help="Basin name")
        p.add_argument("stream", help="Stream name")

    def add_append_args(p: argparse.ArgumentParser) -> None:
        p.add_argument(
            "--fencing-token",
            type=fencing_token_arg,
            help="Base64 fencing token the stream must currently hold",
        )
        p.add_argument(
            "--match-seq-num",
            type=seq_num_arg,
            help="Seq num the first record must be assigned",
        )

    # append
    append_parser = subparsers.add_parser("append", help="Append newline-delimited records")
    add_stream_args(append_parser)
    append_parser.add_argument("--input", "-i", default="-", help="Input file (default: stdin)")
    add_append_args(append_parser)

    # read
    read_parser = subparsers.add_parser("read", help="Read records from a stream")
    add_stream_args(read_parser)
    read_parser.add_argument("--start-seq-num", "-s", type=seq_num_arg, default=0, help="First seq num")
    read_parser.add_argument("--limit-count", "-n", type=positive_int_arg, help="Stop after N records")
    read_parser.add_argument("--limit-bytes", "-b", type=positive_int_arg, help="Stop after N metered bytes")
    read_parser.add_argument("--output", "-o", default="-", help="Output file (default: stdout)")

    # fence
    fence_parser = subparsers.add_parser("fence", help="Set the stream's fencing token")
    add_stream_args(fence_parser)
    fence_parser.add_argument("new_token", type=fencing_token_arg, help="New base64 fencing token")
    add_append_args(fence_parser)

    # trim
    trim_parser = subparsers.add_parser("trim", help="Trim the stream up to a seq num")
    add_stream_args(trim_parser)
    trim_parser.add_argument("trim_point", type=seq_num_arg, help="Earliest seq num to retain")
    add_append_args(trim_parser)

    return parser


def open_output(path: str) -> BinaryIO:
    """Open the record sink; "-" is stdout.

    Raises:
        RecordWrite: If the file cannot be opened
    """
    if path == "-":
        return sys.stdout.buffer
    try:
        return open(path, "wb")
    except OSError as e:
        raise RecordWrite(f"{path}: {e}") from e


def write_batch(sink: BinaryIO, batch: ReadBatch) -> None:
    """Write data record bodies newline-delimited; describe commands on stderr."""
    try:
        for item in batch.records:
            if isinstance(item, SequencedCommand):
                print(f"{item.seq_num}: {item.command}", file=sys.stderr)
            else:
                sink.write(item.body + b"\n")
        sink.flush()
    except OSError as e:
        raise RecordWrite(str(e)) from e


async def append_command(args: argparse.Namespace, service: StreamService) -> None:
    source = await open_record_source(args.input)
    metrics = SessionMetrics()
    session = service.append_session(
        source,
        fencing_token=args.fencing_token,
        match_seq_num=args.match_seq_num,
        metrics=metrics,
    )
    try:
        async for ack in session:
            print(f"Appended {ack}", file=sys.stderr)
    finally:
        if metrics.started:
            print(f"Appended {metrics.summary()}", file=sys.stderr)


async def read_command(args: argparse.Namespace, service: StreamService) -> None:
    sink = open_output(args.output)
    metrics = SessionMetrics()
    session = service.read_session(
        args.start_seq_num,
        limit_count=args.limit_count,
        limit_bytes=args.limit_bytes,
        metrics=metrics,
    )
    try:
        async for event in session:
            if isinstance(event, ReadBatch):
                write_batch(sink, event)
            elif isinstance(event, FirstSeqNum):
                print(f"Records before {event.seq_num} have been trimmed", file=sys.stderr)
            elif isinstance(event, NextSeqNum):
                logger.info("Caught up with the tail", extra={"seq_num": event.seq_num})
    finally:
        if sink is not sys.stdout.buffer:
            sink.close()
        if metrics.started:
            print(f"Read {metrics.summary()}", file=sys.stderr)


async def command_record(args: argparse.Namespace, service: StreamService) -> None:
    if args.command == "fence":
        command = FenceCommand(args.new_token)
    else:
        command = TrimCommand(args.trim_point)
    ack = await service.append_command_record(
        command,
        fencing_token=args.fencing_token,
        match_seq_num=args.match_seq_num,
    )
    print(f"Command applied at seq num {ack.start_seq_num}: {command}", file=sys.stderr)


COMMANDS = {
    "append": append_command,
    "read": read_command,
    "fence": command_record,
    "trim": command_record,
}


async def dispatch(args: argparse.Namespace, service: StreamService) -> int:
    """Run a stream command and map its outcome to an exit status."""
    handler = COMMANDS[args.command]
    try:
        await handler(args, service)
    except SessionAborted as e:
        print(f"Stopped: {e}", file=sys.stderr)
        return 0
    except S2CliError as e:
        print(f"Error: {e}", file=sys.stderr)
        unconfirmed = e.details.get("unacknowledged_records")
        if unconfirmed:
            print(f"{unconfirmed} record(s) were sent but not confirmed", file=sys.stderr)
        return 1
    return 0


async def run(args: argparse.Namespace, settings: S2Settings) -> int:
    """Connect to the service and run one stream command."""
    try:
        token = resolve_token(settings)
    except S2CliError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    cancel = CancellationToken()
    install_signal_handlers(cancel)

    async with httpx.AsyncClient(
        base_url=settings.endpoint,
        headers={"Authorization": f"Bearer {token}"},
        timeout=settings.request_timeout,
    ) as client:
        handle = HttpStreamHandle(
            client,
            args.basin,
            args.stream,
            request_timeout=settings.request_timeout,
        )
        service = StreamService(
            handle,
            cancel=cancel,
            max_batch_records=settings.max_batch_records,
            max_batch_bytes=settings.max_batch_bytes,
            max_in_flight=settings.max_in_flight,
        )
        return await dispatch(args, service)


def config_command(args: argparse.Namespace, settings: S2Settings) -> int:
    path = config_path(settings.config_path)
    try:
        create_config(path, args.token)
    except S2CliError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(f"Token saved to {path}", file=sys.stderr)
    return 0


def cli(argv: Optional[Sequence[str]] = None) -> int:
    """Parse arguments, configure logging and run; returns the exit status."""
    args = build_parser().parse_args(argv)

    try:
        settings = S2Settings()
    except ValidationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    setup_logging(settings)

    if args.command == "config":
        return config_command(args, settings)
    return asyncio.run(run(args, settings))


def main() -> None:
    """Main entry point."""
    sys.exit(cli())


if __name__ == "__main__":
    main()
