"""Command line front end: send, unlock and inspect time-locked messages.

Run with ``python main.py <command>`` from the project root, or the
``timevault`` console script once installed.
"""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import mimetypes
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

from timevault.core.exceptions import TimeVaultError
from timevault.core.hashing import calculate_sha256, verify_file_hash
from timevault.core.models import BlobFormat, MediaFile, MessageParams, ProgressEvent
from timevault.message.unlock import unlock_message
from timevault.security.symmetric import detect_file_format, get_chunked_threshold, get_metadata
from .context import AppContext, build_context, load_settings
from .logging_config import configure_logging

logger = logging.getLogger(__name__)


def _parse_unlock_at(value: str) -> datetime:
    try:
        moment = datetime.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"not an ISO 8601 timestamp: {value!r}") from exc
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def _print_json(payload) -> None:
    print(json.dumps(payload, indent=2))


def _log_progress(event: ProgressEvent) -> None:
    logger.info("%3d%% %s", int(event.percent), event.message)


def _read_passphrase(enabled: bool) -> Optional[str]:
    if not enabled:
        return None
    return getpass.getpass("Passphrase: ")


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------


def cmd_send(args: argparse.Namespace, ctx: AppContext) -> int:
    path = Path(args.file).expanduser()
    if args.unlock_at is not None:
        unlock_at = args.unlock_at
    else:
        unlock_at = datetime.now(timezone.utc) + timedelta(minutes=args.in_minutes)

    mime_type = args.mime_type or mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    params = MessageParams(
        media=MediaFile(data=path.read_bytes(), name=path.name, mime_type=mime_type),
        recipient_address=args.recipient,
        unlock_at=unlock_at,
        sender_address=args.sender,
    )
    receipt = ctx.pipeline.create_message(
        params, on_progress=_log_progress, passphrase=_read_passphrase(args.passphrase)
    )
    payload = receipt.to_dict()
    payload["unlockAt"] = unlock_at.isoformat()
    _print_json(payload)
    return 0


def cmd_unlock(args: argparse.Namespace, ctx: AppContext) -> int:
    record = ctx.ledger.get_message(args.message_id)
    result = unlock_message(
        record,
        ctx.storage,
        passphrase=_read_passphrase(args.passphrase),
        demo_mode=ctx.settings.demo_mode,
        on_progress=_log_progress,
    )
    if args.out:
        out_path = Path(args.out).expanduser()
    else:
        # never let sender-controlled metadata pick a directory
        out_path = Path(Path(result.file_name or f"message-{args.message_id}.bin").name)
    out_path.write_bytes(result.data)
    _print_json(
        {
            "messageId": record.message_id,
            "path": str(out_path),
            "fileName": result.file_name,
            "mimeType": result.mime_type,
            "size": len(result.data),
        }
    )
    return 0


def cmd_inbox(args: argparse.Namespace, ctx: AppContext) -> int:
    if args.sent:
        records = ctx.ledger.list_sent(args.address)
    else:
        records = ctx.ledger.list_received(args.address)
    now = datetime.now(timezone.utc)
    rows = []
    for record in records:
        row = record.to_dict()
        row["unlockAt"] = record.unlock_at.isoformat()
        row["locked"] = record.unlock_at > now
        rows.append(row)
    _print_json(rows)
    return 0


def cmd_hash(args: argparse.Namespace, ctx: AppContext) -> int:
    path = Path(args.file).expanduser()
    if args.expect is None:
        print(calculate_sha256(path))
        return 0
    if verify_file_hash(path, args.expect):
        print("ok")
        return 0
    print(f"error: digest of {path.name} does not match", file=sys.stderr)
    return 1


def cmd_inspect(args: argparse.Namespace, ctx: AppContext) -> int:
    path = Path(args.file).expanduser()
    fmt = detect_file_format(path)
    info = {
        "path": str(path),
        "size": path.stat().st_size,
        "format": fmt.value,
        **get_metadata(),
        "chunkedThreshold": get_chunked_threshold(),
    }
    if fmt is BlobFormat.CHUNKED:
        with open(path, "rb") as f:
            info["totalChunks"] = int.from_bytes(f.read(4), "little")
    _print_json(info)
    return 0


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="timevault",
        description="Send and unlock time-locked, client-side encrypted messages.",
    )
    parser.add_argument(
        "--storage-root",
        default=None,
        help="Blob store directory (default: $TIMEVAULT_STORAGE_ROOT or ~/.timevault)",
    )
    parser.add_argument(
        "--ledger",
        dest="ledger_path",
        default=None,
        help="Ledger JSON file (default: <storage-root>/ledger.json)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (default: $TIMEVAULT_LOG_LEVEL or INFO)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    send = sub.add_parser("send", help="Encrypt a file and anchor it for a recipient")
    send.add_argument("file", help="File to send")
    send.add_argument("--from", dest="sender", required=True, help="Sender address")
    send.add_argument("--to", dest="recipient", required=True, help="Recipient address")
    when = send.add_mutually_exclusive_group(required=True)
    when.add_argument("--unlock-at", type=_parse_unlock_at, help="ISO 8601 unlock time (UTC if no offset)")
    when.add_argument("--in-minutes", type=int, help="Unlock this many minutes from now")
    send.add_argument("--mime-type", default=None, help="Override the guessed MIME type")
    send.add_argument(
        "--passphrase",
        action="store_true",
        help="Wrap the key with a prompted passphrase instead of the recipient address",
    )
    send.set_defaults(handler=cmd_send)

    unlock = sub.add_parser("unlock", help="Decrypt a message once its time lock has passed")
    unlock.add_argument("message_id", help="Message id from the ledger")
    unlock.add_argument("--out", default=None, help="Output path (default: the original file name)")
    unlock.add_argument("--passphrase", action="store_true", help="Prompt for the claim passphrase")
    unlock.add_argument("--demo", action="store_true", help="Ignore the time lock (demo mode)")
    unlock.set_defaults(handler=cmd_unlock)

    inbox = sub.add_parser("inbox", help="List messages for an address")
    inbox.add_argument("address", help="Recipient (or sender with --sent) address")
    inbox.add_argument("--sent", action="store_true", help="List messages sent by the address")
    inbox.set_defaults(handler=cmd_inbox)

    hash_cmd = sub.add_parser("hash", help="Print the SHA-256 of a file")
    hash_cmd.add_argument("file")
    hash_cmd.add_argument("--expect", default=None, help="Compare against this hex digest instead of printing")
    hash_cmd.set_defaults(handler=cmd_hash)

    inspect = sub.add_parser("inspect", help="Show the layout of an encrypted blob file")
    inspect.add_argument("file")
    inspect.set_defaults(handler=cmd_inspect)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = _build_arg_parser()
    args = parser.parse_args(argv)

    settings = load_settings(
        storage_root=args.storage_root,
        ledger_path=args.ledger_path,
        demo_mode=True if getattr(args, "demo", False) else None,
        log_level=args.log_level,
    )
    configure_logging(settings.log_level)

    try:
        ctx = build_context(settings)
        return args.handler(args, ctx)
    except (TimeVaultError, OSError) as exc:
        logger.debug("Command %s failed", args.command, exc_info=True)
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover - CLI entry
    sys.exit(main())
