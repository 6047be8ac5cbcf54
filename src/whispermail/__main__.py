"""
WhisperMail - Command line entry point.

Created by orpheus497
"""

import argparse
import asyncio
import getpass
import sys
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .client import WhisperClient
from .config import Config
from .constants import CONFIG_FILENAME, DEFAULT_DATA_DIR, HISTORY_DEFAULT_LIMIT
from .errors import WhisperError
from .message import Message
from .utils import (
    configure_logging,
    format_file_size,
    format_timestamp,
    format_timestamp_relative,
    truncate_string,
)

console = Console()

PREVIEW_LENGTH = 200


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="whispermail",
        description="WhisperMail - end-to-end encrypted messaging over email",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  whispermail init --address me@example.com --peer you@example.com
  whispermail announce
  whispermail poll
  whispermail import-key you@example.com --fingerprint 1a2b:3c4d:...
  whispermail send "hello"

Created by orpheus497
        """,
    )
    parser.add_argument("--version", action="version", version=f"WhisperMail {__version__}")
    parser.add_argument(
        "--data-dir",
        type=str,
        default=None,
        help=f"Data directory for keys, messages and logs (default: {DEFAULT_DATA_DIR})",
    )
    parser.add_argument("--config", type=str, default=None, help="Path to a TOML config file")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    p = sub.add_parser("init", help="Create the local identity")
    p.add_argument("--address", help="Our own mail address")
    p.add_argument("--peer", help="The correspondent's mail address")
    p.add_argument("--force", action="store_true", help="Replace an existing identity")

    sub.add_parser("status", help="Show identity, peer and exchange state")
    sub.add_parser("fingerprint", help="Show our public key fingerprint")
    sub.add_parser("export-key", help="Print our public key (base64)")
    sub.add_parser("announce", help="Send our public key to the peer")

    p = sub.add_parser("import-key", help="Trust a peer key after verifying its fingerprint")
    p.add_argument("address", help="Peer mail address")
    p.add_argument("key", nargs="?", help="Public key (base64 or PEM); omit to use an announced key")
    p.add_argument("--fingerprint", required=True, help="Fingerprint verified with the peer")

    p = sub.add_parser("send", help="Send a text message")
    p.add_argument("text")

    p = sub.add_parser("send-file", help="Send a file or image")
    p.add_argument("path")
    p.add_argument("--type", dest="file_type", help="MIME type (guessed from the name by default)")

    p = sub.add_parser("poll", help="Fetch and decrypt new messages")
    p.add_argument("--watch", action="store_true", help="Keep polling until interrupted")

    p = sub.add_parser("history", help="Show recent messages")
    p.add_argument("--limit", type=int, default=HISTORY_DEFAULT_LIMIT)
    p.add_argument("--full", action="store_true", help="Do not shorten long messages")

    p = sub.add_parser("save", help="Write a received attachment to disk")
    p.add_argument("message_id")
    p.add_argument("dest", nargs="?", default=".")

    p = sub.add_parser("backup-key", help="Export the private key")
    p.add_argument("--output", help="Write to this file instead of stdout")
    p.add_argument("--no-password", action="store_true", help="Export without encryption")

    p = sub.add_parser("restore-key", help="Import a private key backup")
    p.add_argument("path")
    p.add_argument("--no-password", action="store_true", help="Backup is not encrypted")

    p = sub.add_parser("config", help="Show the effective configuration")
    p.add_argument("--example", action="store_true", help="Write an example config file")

    p = sub.add_parser("clear", help="Delete history and destroy the private key")
    p.add_argument("--yes", action="store_true", help="Confirm irreversible deletion")

    return parser


def _print_message(message: Message, full: bool = True) -> None:
    direction = "[cyan]<-[/cyan]" if message.incoming else "[green]->[/green]"
    when = format_timestamp(message.timestamp)
    if message.is_attachment:
        body = (
            f"[{message.content_type.value}] {message.file_name} "
            f"({format_file_size(message.file_size or 0)}) id={message.message_id}"
        )
    else:
        body = message.content or ""
        if not full:
            body = truncate_string(body, PREVIEW_LENGTH)
    if message.withdrawn:
        body = "[dim](withdrawn)[/dim]"
    console.print(f"{when} {direction} {escape(message.sender)}: ", end="")
    console.print(body, markup=message.withdrawn)


def _print_report(client: WhisperClient, report) -> None:
    if report is None:
        console.print("[yellow]Poll failed; will retry from the same checkpoint[/yellow]")
        return
    for message in report.messages:
        _print_message(message)
    for offer in report.offers:
        console.print(
            f"[bold]Public key received from {escape(offer.address)}[/bold]\n"
            f"  Fingerprint: {offer.fingerprint}\n"
            f"  Verify it with the sender, then run: "
            f"whispermail import-key {offer.address} --fingerprint <fingerprint>"
        )
    for result in report.errors:
        console.print(f"[red]Skipped payload {result.index}:[/red] {escape(result.error.message)}")
    if not len(report):
        console.print("No new messages")


def _read_password(confirm: bool) -> str:
    password = getpass.getpass("Backup password: ")
    if confirm and password != getpass.getpass("Repeat password: "):
        raise SystemExit("Passwords do not match")
    return password


async def _run(args: argparse.Namespace, client: WhisperClient) -> int:
    command = args.command

    if command == "init":
        client.set_addresses(args.address, args.peer)
        identity = client.init_identity(force=args.force)
        console.print(f"Identity ready. Fingerprint:\n[bold]{identity.fingerprint}[/bold]")
        return 0

    if command == "status":
        table = Table(title="WhisperMail")
        table.add_column("Field")
        table.add_column("Value")
        status = client.status()
        if status["last_checked"]:
            status["last_checked"] = format_timestamp_relative(status["last_checked"])
        for key, value in status.items():
            table.add_row(key, escape(", ".join(value) if isinstance(value, list) else str(value)))
        console.print(table)
        return 0

    if command == "config":
        if args.example:
            if client.config.config_path.exists():
                console.print(f"[red]{escape(str(client.config.config_path))} already exists[/red]")
                return 1
            Config.create_example(client.config.config_path)
            console.print(f"Example configuration written to {client.config.config_path}")
            return 0
        table = Table(title=str(client.config.config_path))
        table.add_column("Setting")
        table.add_column("Value")
        for section, settings in client.config.to_dict().items():
            for key, value in settings.items():
                if key == "password" and value:
                    value = "********"
                table.add_row(f"{section}.{key}", escape(str(value)))
        console.print(table)
        return 0

    if command == "fingerprint":
        console.print(client.fingerprint())
        return 0

    if command == "export-key":
        console.print(client.export_public_key(), soft_wrap=True)
        console.print(f"Fingerprint: {client.fingerprint()}")
        return 0

    if command == "announce":
        sent = await client.announce()
        console.print("Public key sent" if sent else "[red]Relay did not accept the key[/red]")
        return 0 if sent else 1

    if command == "import-key":
        if args.key:
            peer = await client.import_peer_key(args.address, args.key, args.fingerprint)
        else:
            peer = await client.trust_pending(args.address, args.fingerprint)
        console.print(f"Trusted key for {peer.address} ({peer.fingerprint})")
        return 0

    if command == "send":
        message = await client.send_text(args.text)
        console.print(f"Sent {message.message_id}")
        return 0

    if command == "send-file":
        message = await client.send_file(Path(args.path), args.file_type)
        console.print(
            f"Sent {message.content_type.value} {message.file_name} "
            f"({format_file_size(message.file_size or 0)})"
        )
        return 0

    if command == "poll":
        if not args.watch:
            _print_report(client, await client.poll_once())
            return 0
        client.poller.on_batch = lambda report: _print_report(client, report)
        console.print(f"Polling every {client.poller.interval}s, Ctrl+C to stop")
        await client.poller.run()
        return 0

    if command == "history":
        for message in client.history(args.limit):
            _print_message(message, full=args.full)
        return 0

    if command == "save":
        target = await client.save_attachment(args.message_id, Path(args.dest))
        console.print(f"Saved to {target}")
        return 0

    if command == "backup-key":
        password = None if args.no_password else _read_password(confirm=True)
        blob = client.backup_key(password)
        if args.output:
            Path(args.output).write_text(blob, encoding="utf-8")
            console.print(f"Private key written to {args.output}")
        else:
            console.print(blob, soft_wrap=True)
        return 0

    if command == "restore-key":
        blob = Path(args.path).read_text(encoding="utf-8")
        password = None if args.no_password else _read_password(confirm=False)
        identity = client.restore_key(blob, password)
        console.print(f"Identity restored. Fingerprint:\n[bold]{identity.fingerprint}[/bold]")
        return 0

    if command == "clear":
        client.clear_all(confirm=args.yes)
        console.print("History deleted and private key destroyed")
        return 0

    return 2


async def _main_async(args: argparse.Namespace, data_dir: Path, config: Config) -> int:
    client = WhisperClient(data_dir, config)
    try:
        client.start()
        return await _run(args, client)
    finally:
        await client.close()


def main(argv: Optional[list] = None) -> int:
    """Main entry point for WhisperMail."""
    args = build_parser().parse_args(argv)

    data_dir = Path(args.data_dir or DEFAULT_DATA_DIR).expanduser().resolve()
    try:
        config = Config(Path(args.config) if args.config else data_dir / CONFIG_FILENAME)
    except WhisperError as e:
        console.print(f"[red]Error[/red] {escape(str(e))}")
        return 1

    configure_logging(config.data.get("logging"), data_dir, debug=args.debug)

    try:
        return asyncio.run(_main_async(args, data_dir, config))
    except KeyboardInterrupt:
        console.print("Interrupted")
        return 130
    except WhisperError as e:
        console.print(f"[red]Error[/red] {escape(str(e))}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
