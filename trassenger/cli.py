"""
Command line interface for Trassenger.

    trassenger init
    trassenger export-contact Alice
    trassenger import-contact ~/Downloads/contact-Bob.json
    trassenger send Bob "hi"
    trassenger session
    trassenger daemon
"""

import sys
import asyncio
import logging
import argparse
from pathlib import Path
from datetime import datetime
from typing import Optional, List

from . import __version__
from .client import TrassengerClient, UnknownContact
from .config import Config, Paths
from .contacts import ContactError
from .coordination import InstanceAlreadyRunning, install_signal_handlers
from .daemon import run_daemon
from .events import EventBus, NewMessageDecoded, PollingIntervalChanged
from .identity import Identity, IdentityNotFound
from .store import LocalStore, Message, STATUS_FAILED

logger = logging.getLogger("trassenger")

LOG_FORMAT = '%(asctime)s [%(name)s] %(levelname)s: %(message)s'


def setup_logging(paths: Paths, role: str, level: str = "INFO", verbose: bool = False) -> Path:
    """Log to a fresh file per run, and to stderr when verbose."""
    paths.logs_dir.mkdir(parents=True, exist_ok=True)
    log_file = paths.logs_dir / f"{role}-{datetime.now().strftime('%Y%m%d-%H%M%S')}.log"

    handlers: List[logging.Handler] = [logging.FileHandler(log_file)]
    if verbose:
        handlers.append(logging.StreamHandler(sys.stderr))

    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt='%H:%M:%S',
        handlers=handlers,
        force=True,
    )
    return log_file


def format_message(message: Message) -> str:
    stamp = datetime.fromtimestamp(message.timestamp).strftime('%Y-%m-%d %H:%M')
    status = f" ({message.status})" if message.is_outbound else ""
    return f"[{stamp}] {message.sender}: {message.content}{status}"


def cmd_init(args, paths: Paths) -> int:
    """Create the data directory, identity and default config."""
    print(f"Setting up Trassenger in {paths.root}")
    store = LocalStore(paths)

    if paths.identity_file.exists() and not args.force:
        identity = store.load_identity()
        print("Identity already exists (use --force to replace it).")
    else:
        identity = Identity.generate()
        store.save_identity(identity)
        print(f"  Keys saved to: {paths.identity_file}")

    if not paths.config_file.exists():
        store.save_config(Config.default())
        print(f"  Config saved to: {paths.config_file}")

    print(f"  Signing key:  {identity.signing_public_key_hex}")
    print(f"  Exchange key: {identity.exchange_public_key_hex}")
    print("\nNext: trassenger export-contact <your name>, and send the file to a peer.")
    return 0


def cmd_export_contact(args, client: TrassengerClient) -> int:
    path = client.export_contact(args.name, Path(args.output).expanduser() if args.output else None)
    print(f"Contact exported to: {path}")
    return 0


def cmd_import_contact(args, client: TrassengerClient) -> int:
    try:
        peer = client.import_contact(args.source, args.name)
    except ContactError as e:
        print(f"Import failed: {e}", file=sys.stderr)
        return 1
    print(f"Contact imported: {peer.name}")
    print(f"  Queue: {peer.conversation_id(client.local_key)}")
    return 0


def cmd_contacts(args, client: TrassengerClient) -> int:
    peers = client.contacts()
    if not peers:
        print("No contacts yet. Import one with: trassenger import-contact <file>")
        return 0
    for peer in peers:
        print(f"{peer.name}\t{peer.conversation_id(client.local_key)}")
    return 0


def cmd_remove_contact(args, client: TrassengerClient) -> int:
    if not client.remove_contact(args.name):
        print(f"Unknown contact: {args.name}", file=sys.stderr)
        return 1
    print(f"Contact removed: {args.name}")
    return 0


def cmd_rename_contact(args, client: TrassengerClient) -> int:
    try:
        renamed = client.rename_contact(args.old_name, args.new_name)
    except ValueError as e:
        print(str(e), file=sys.stderr)
        return 1
    if not renamed:
        print(f"Unknown contact: {args.old_name}", file=sys.stderr)
        return 1
    print(f"Contact renamed: {args.old_name} -> {args.new_name}")
    return 0


def cmd_send(args, client: TrassengerClient) -> int:
    message = asyncio.run(client.send(args.name, args.text))
    print(format_message(message))
    return 1 if message.status == STATUS_FAILED else 0


def cmd_history(args, client: TrassengerClient) -> int:
    for message in client.history(args.name)[-args.limit:]:
        print(format_message(message))
    return 0


async def _read_input(client: TrassengerClient) -> None:
    """Lines of the form 'Name: text' are sent to that contact."""
    loop = asyncio.get_running_loop()
    lines: asyncio.Queue = asyncio.Queue()
    fd = sys.stdin.fileno()
    loop.add_reader(fd, lambda: lines.put_nowait(sys.stdin.readline()))

    try:
        while True:
            line = await lines.get()
            if not line:
                return
            name, sep, text = line.strip().partition(':')
            if not sep or not text.strip():
                print("Usage: <contact>: <message>")
                continue
            try:
                message = await client.send(name.strip(), text.strip())
            except UnknownContact as e:
                print(str(e))
                continue
            print(format_message(message))
    finally:
        loop.remove_reader(fd)


async def _run_session(client: TrassengerClient) -> None:
    stop = asyncio.Event()
    poller = asyncio.ensure_future(client.run(stop))
    reader = asyncio.ensure_future(_read_input(client))
    install_signal_handlers(poller)

    try:
        await asyncio.wait({poller, reader}, return_when=asyncio.FIRST_COMPLETED)
        stop.set()
        client.scheduler.reset_interval()
        await poller
    except asyncio.CancelledError:
        pass
    finally:
        reader.cancel()


def cmd_session(args, client: TrassengerClient) -> int:
    def on_event(event) -> None:
        if isinstance(event, NewMessageDecoded):
            print(format_message(event.message))
        elif isinstance(event, PollingIntervalChanged) and args.verbose:
            print(f"(next poll in {event.interval}s)")

    client.events.subscribe(on_event)
    print("Session started. Type '<contact>: <message>' to send, Ctrl-D to quit.")
    asyncio.run(_run_session(client))
    return 0


def cmd_daemon(args, paths: Paths) -> int:
    try:
        asyncio.run(run_daemon(paths))
    except InstanceAlreadyRunning as e:
        print(f"{e}", file=sys.stderr)
        return 1
    return 0


def cmd_config(args, paths: Paths) -> int:
    store = LocalStore(paths)
    config = store.load_config()
    changed = False

    for attr, value in [
        ('server_url', args.server_url),
        ('poll_floor_secs', args.floor),
        ('poll_ceiling_secs', args.ceiling),
        ('background_interval_secs', args.background),
    ]:
        if value is not None:
            setattr(config, attr, value)
            changed = True

    if changed:
        try:
            store.save_config(config)
        except ValueError as e:
            print(f"Invalid config: {e}", file=sys.stderr)
            return 1
        print(f"Config saved to: {paths.config_file}")

    for key, value in config.to_dict().items():
        print(f"{key} = {value}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="trassenger", description="Trassenger encrypted messenger")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--data-dir", help="Data directory (default: $TRASSENGER_DATA_DIR or ~/.trassenger)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging to stderr")

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init", help="Create identity and config")
    p.add_argument("--force", action="store_true", help="Replace an existing identity")

    p = sub.add_parser("export-contact", help="Write your contact card")
    p.add_argument("name", help="Name your peer will see")
    p.add_argument("-o", "--output", help="Output file (default: ~/Downloads/contact-<name>.json)")

    p = sub.add_parser("import-contact", help="Import a peer's contact card")
    p.add_argument("source", help="Card file path or pasted JSON")
    p.add_argument("--name", help="Label to use instead of the card's name")

    sub.add_parser("contacts", help="List contacts")

    p = sub.add_parser("remove-contact", help="Forget a contact")
    p.add_argument("name")

    p = sub.add_parser("rename-contact", help="Change a contact's label")
    p.add_argument("old_name")
    p.add_argument("new_name")

    p = sub.add_parser("send", help="Send one message")
    p.add_argument("name")
    p.add_argument("text")

    p = sub.add_parser("history", help="Show a conversation")
    p.add_argument("name")
    p.add_argument("-n", "--limit", type=int, default=50)

    sub.add_parser("session", help="Interactive session with adaptive polling")
    sub.add_parser("daemon", help="Background polling with notifications")

    p = sub.add_parser("config", help="Show or change settings")
    p.add_argument("--server-url")
    p.add_argument("--floor", type=int, help="Minimum poll interval (seconds)")
    p.add_argument("--ceiling", type=int, help="Maximum poll interval (seconds)")
    p.add_argument("--background", type=int, help="Background poll interval (seconds)")

    return parser


CLIENT_COMMANDS = {
    "export-contact": cmd_export_contact,
    "import-contact": cmd_import_contact,
    "contacts": cmd_contacts,
    "remove-contact": cmd_remove_contact,
    "rename-contact": cmd_rename_contact,
    "send": cmd_send,
    "history": cmd_history,
    "session": cmd_session,
}

PATH_COMMANDS = {
    "init": cmd_init,
    "daemon": cmd_daemon,
    "config": cmd_config,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    paths = Paths(root=Path(args.data_dir).expanduser()) if args.data_dir else Paths.default()
    paths.ensure()

    role = "daemon" if args.command == "daemon" else "session"
    try:
        level = Config.load(paths.config_file).log_level
    except (OSError, ValueError) as e:
        print(f"Ignoring unreadable config: {e}", file=sys.stderr)
        level = "INFO"
    setup_logging(paths, role, level, args.verbose)
    logger.info(f"Trassenger {__version__}: {args.command}")

    if args.command in PATH_COMMANDS:
        return PATH_COMMANDS[args.command](args, paths)

    try:
        client = TrassengerClient.from_paths(paths, EventBus())
    except IdentityNotFound:
        print("No identity yet. Run: trassenger init", file=sys.stderr)
        return 1

    try:
        return CLIENT_COMMANDS[args.command](args, client)
    except UnknownContact as e:
        print(str(e), file=sys.stderr)
        return 1
    finally:
        client.close()


if __name__ == "__main__":
    sys.exit(main())
