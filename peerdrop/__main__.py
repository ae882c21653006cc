"""
peerdrop — direct LAN file transfer, CLI entry point.

Usage:
    python -m peerdrop send <path> [<path>...] [--port N] [--quiet]
    python -m peerdrop receive <host[:port]> <code> [--dir DIR] [--port N] [--keep-partial] [--quiet]
"""

from __future__ import annotations

import argparse
import logging
import sys

from .controller import SessionController, SessionHandle
from .errors import TransferError
from .events import ErrorOccurred, ProgressUpdate, StateChanged, TransferCompleted
from .netinfo import local_address
from .progress import NullProgress, ProgressView
from .protocol import DEFAULT_PORT, parse_code
from .throughput import format_size
from .transfer import build_batch

log = logging.getLogger("peerdrop.cli")


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        level=level,
    )


# ---------------------------------------------------------------------------
# Sub-commands
# ---------------------------------------------------------------------------

def _follow(ctl: SessionController, handle: SessionHandle,
            view: ProgressView | NullProgress) -> int:
    """Render events until the session ends; return the exit code."""
    view.start()
    try:
        for event in handle.events():
            if isinstance(event, ProgressUpdate):
                view.show(event.progress)
            elif isinstance(event, StateChanged) and event.detail:
                log.debug("%s: %s", event.state, event.detail)
    except KeyboardInterrupt:
        ctl.cancel(handle)
        handle.wait(timeout=5)
    finally:
        view.stop()

    status = handle.status
    if isinstance(status.result, TransferCompleted):
        result = status.result
        print(f"[peerdrop] ✓ Transfer complete — {len(result.files)} file(s), "
              f"{format_size(result.total_bytes)} in {result.elapsed:.1f}s")
        return 0
    if isinstance(status.error, ErrorOccurred):
        print(f"[peerdrop] Transfer failed: {status.error.kind.value}: {status.error.message}",
              file=sys.stderr)
    return 1


def cmd_send(args: argparse.Namespace) -> int:
    """Offer files/folders to one receiver."""
    try:
        entries = build_batch(args.paths)
    except (FileNotFoundError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    ctl = SessionController(port=args.port)
    try:
        handle = ctl.start_sending(entries)
    except TransferError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    total = sum(e.size for e in entries)
    print(f"[peerdrop] {len(entries)} file(s) ({format_size(total)}) ready to send.")
    print(f"[peerdrop] On the other device, enter:  IP: {local_address()}  Code: {handle.code}")
    if handle.address[1] != DEFAULT_PORT:
        print(f"[peerdrop] (port {handle.address[1]})")

    view = NullProgress() if args.quiet else ProgressView(
        peer_name=f"port {handle.address[1]}", direction="↑ SEND")
    return _follow(ctl, handle, view)


def cmd_receive(args: argparse.Namespace) -> int:
    """Fetch files from a sender."""
    try:
        code = parse_code(args.code)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    ctl = SessionController(port=args.port, keep_partial=args.keep_partial)
    try:
        handle = ctl.start_receiving(args.host, code, args.dir)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(f"[peerdrop] Connecting to {handle.address[0]}:{handle.address[1]} → {args.dir}")
    view = NullProgress() if args.quiet else ProgressView(
        peer_name=handle.address[0], direction="↓ RECV")
    return _follow(ctl, handle, view)


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------

def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="peerdrop",
        description="peerdrop — send files directly to another device on the LAN")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Enable debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    # --- send ---
    p_send = sub.add_parser("send", help="Offer files/folders to one receiver")
    p_send.add_argument("paths", nargs="+", help="Files or directories to send")
    p_send.add_argument("--port", type=int, default=DEFAULT_PORT,
                        help=f"TCP port to listen on (default {DEFAULT_PORT})")
    p_send.add_argument("--quiet", action="store_true", help="No progress bars")

    # --- receive ---
    p_recv = sub.add_parser("receive", help="Fetch files from a sender")
    p_recv.add_argument("host", help="Sender address, optionally host:port")
    p_recv.add_argument("code", help="6-digit security code shown by the sender")
    p_recv.add_argument("--dir", default="./received",
                        help="Directory to save received files (default: ./received)")
    p_recv.add_argument("--port", type=int, default=DEFAULT_PORT,
                        help=f"Sender TCP port (default {DEFAULT_PORT})")
    p_recv.add_argument("--keep-partial", action="store_true",
                        help="Keep a half-written file if the transfer fails")
    p_recv.add_argument("--quiet", action="store_true", help="No progress bars")

    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: list[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    handlers = {
        "send":    cmd_send,
        "receive": cmd_receive,
    }
    sys.exit(handlers[args.command](args))


if __name__ == "__main__":
    main()
