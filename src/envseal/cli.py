"""CLI for envseal - encrypted secrets files that are safe to commit."""

import argparse
import getpass
import logging
import os
import stat
import subprocess
import sys
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from . import __version__
from . import crypto
from .config import IDENTITY_DIR_MODE, Settings, get_log_level
from .errors import EnvsealError, KeyNotFoundError
from .roster import NAME_PATTERN, Roster
from .storage import FileStore, write_atomically
from .vault import UnsealPolicy, Vault

console = Console()
err_console = Console(stderr=True)

logger = logging.getLogger("envseal.cli")

EXAMPLE_KEY = "HELLO"
EXAMPLE_VALUE = "World (Encrypted with envseal)"


class IdentityError(EnvsealError):
    """Local identity file missing or unreadable."""
    pass


def mask_value(value: str, peek_chars: int = 4) -> str:
    """
    Mask a secret value, showing only first and last N characters.

    Used whenever a value is echoed back so the full secret never lands in
    terminal scrollback.
    """
    if not value:
        return "(empty)"

    if len(value) <= peek_chars * 2:
        return "*" * len(value)

    first = value[:peek_chars]
    last = value[-peek_chars:]
    hidden_len = len(value) - (peek_chars * 2)
    return f"{first}{'*' * min(hidden_len, 8)}{last}"


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else get_log_level()
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False, show_time=False)],
        force=True,
    )


def load_identity(settings: Settings) -> crypto.Identity:
    try:
        return crypto.load_identity(settings.identity_file)
    except FileNotFoundError:
        raise IdentityError(
            f"identity not found at {settings.identity_file} (run 'envseal init' first?)"
        ) from None


def open_vault(settings: Settings) -> Vault:
    """Load the secrets file and unlock it with the local identity."""
    identity = load_identity(settings)
    vault = Vault.load(FileStore(settings.secrets_file))
    vault.unlock(identity)
    return vault


def identity_permissions_ok(path: Path) -> bool:
    mode = stat.S_IMODE(path.stat().st_mode)
    return mode & 0o077 == 0


def cmd_status(args, settings: Settings):
    """Show status and configuration."""
    console.print("[bold]envseal status[/bold]\n")

    table = Table(show_header=True)
    table.add_column("Component", style="cyan")
    table.add_column("Status")
    table.add_column("Path/Info", style="dim")

    identity_file = settings.identity_file
    public_key = None
    if identity_file.exists():
        if identity_permissions_ok(identity_file):
            perms = "[green]ok[/green]"
        else:
            perms = "[yellow]too open[/yellow]"
        table.add_row("identity", f"[green]exists[/green], permissions {perms}", str(identity_file))
        try:
            public_key = crypto.load_identity(identity_file).public_key
        except EnvsealError as e:
            table.add_row("identity", "[red]unreadable[/red]", str(e))
    else:
        table.add_row("identity", "[yellow]not found[/yellow]", "envseal init")

    for label, path in (("manifest", settings.manifest_file), ("secrets file", settings.secrets_file)):
        table.add_row(
            label,
            "[green]exists[/green]" if path.exists() else "[yellow]not found[/yellow]",
            str(path),
        )

    console.print(table)

    if settings.manifest_file.exists():
        try:
            roster = Roster.load(FileStore(settings.manifest_file))
            console.print(f"\n[dim]Roster: {len(roster)} users[/dim]")
        except EnvsealError as e:
            console.print(f"\n[red]Cannot read manifest:[/red] {e}")

    if settings.secrets_file.exists():
        try:
            vault = Vault.load(FileStore(settings.secrets_file))
            recipients = vault.recipients
            console.print(f"[dim]Secrets: {len(vault.keys())} keys, {len(recipients)} recipients[/dim]")
            if public_key and public_key not in recipients:
                console.print("[yellow]Warning:[/yellow] your public key is not a recipient of this file")
        except EnvsealError as e:
            console.print(f"[red]Cannot read secrets:[/red] {e}")

    return 0


def _default_user_name() -> str:
    try:
        name = getpass.getuser().strip()
    except (KeyError, OSError):
        name = ""
    return name if NAME_PATTERN.match(name) else "admin"


def cmd_init(args, settings: Settings):
    """Initialize identity, manifest and secrets file."""
    console.print("[bold]Initializing envseal...[/bold]")

    identity_file = settings.identity_file
    if identity_file.exists():
        identity = load_identity(settings)
        console.print("[green]✓[/green] Identity loaded")
    else:
        identity_file.parent.mkdir(mode=IDENTITY_DIR_MODE, parents=True, exist_ok=True)
        identity = crypto.generate_identity()
        write_atomically(identity_file, (identity.secret + "\n").encode("ascii"))
        console.print(f"[green]✓[/green] Identity created: {identity_file}")

    if settings.manifest_file.exists():
        console.print(f"[yellow]Warning:[/yellow] {settings.manifest_file} already exists. Skipping.")
    else:
        project_name = (args.name or "").strip() or Path.cwd().name
        roster = Roster(FileStore(settings.manifest_file), project_name=project_name)
        roster.add_user(_default_user_name(), identity.public_key)
        roster.save()
        console.print(f"[green]✓[/green] {settings.manifest_file} created")

    if settings.secrets_file.exists():
        console.print(f"[yellow]Warning:[/yellow] {settings.secrets_file} already exists. Skipping.")
    else:
        with Vault.create(FileStore(settings.secrets_file), [identity.public_key]) as vault:
            vault.set_secret(EXAMPLE_KEY, EXAMPLE_VALUE)
            vault.save()
        console.print(f"[green]✓[/green] {settings.secrets_file} created")

    console.print(f"\nPublic key: [bold]{identity.public_key}[/bold]")
    console.print("[dim]Try: envseal print[/dim]")
    return 0


def cmd_whoami(args, settings: Settings):
    """Show the local public key."""
    identity = load_identity(settings)
    console.print("Your identity:")
    console.print(f"[cyan]{identity.public_key}[/cyan]")
    console.print("\n[bold]Next step:[/bold] send this key to your project administrator.")
    return 0


def cmd_list(args, settings: Settings):
    """List secret keys (values are never decrypted)."""
    vault = Vault.load(FileStore(settings.secrets_file))
    keys = vault.keys()

    if not keys:
        console.print("[dim]No secrets found.[/dim]")
        return 0

    table = Table(title="Available Secrets", show_header=True)
    table.add_column("Key", style="cyan")
    for key in keys:
        table.add_row(key)

    console.print(table)
    console.print(f"\n[dim]Total: {len(keys)} secrets[/dim]")
    return 0


def cmd_get(args, settings: Settings):
    """Print one decrypted value (no newline, for piping)."""
    with open_vault(settings) as vault:
        try:
            value = vault.get_secret(args.key)
        except KeyNotFoundError as e:
            err_console.print(f"[red]Error:[/red] {escape(str(e))}")
            err_console.print("[dim]Use 'envseal list' to see available keys[/dim]")
            return 1
    print(value, end="")
    return 0


def _parse_pairs(items):
    pairs = []
    for item in items:
        key, sep, value = item.partition("=")
        key = key.strip()
        if not sep:
            raise EnvsealError(f"invalid argument {item!r}: expected KEY=VALUE")
        if not key:
            raise EnvsealError(f"invalid argument {item!r}: key cannot be empty")
        # Values are not trimmed: surrounding spaces may be intentional
        pairs.append((key, value))
    return pairs


def cmd_set(args, settings: Settings):
    """Add or update sealed values."""
    pairs = _parse_pairs(args.pairs)
    with open_vault(settings) as vault:
        for key, value in pairs:
            vault.set_secret(key, value)
            console.print(f"[green]Set:[/green] {escape(key)} = {escape(mask_value(value))}")
        vault.save()
    console.print(f"[dim]Updated {settings.secrets_file}[/dim]")
    return 0


def cmd_unset(args, settings: Settings):
    """Remove secrets."""
    with open_vault(settings) as vault:
        for key in args.keys:
            vault.unset_secret(key)
            console.print(f"[green]Removed:[/green] {escape(key)}")
        vault.save()
    return 0


def cmd_print(args, settings: Settings):
    """Print every secret as KEY=VALUE."""
    policy = UnsealPolicy.STRICT if args.strict else UnsealPolicy(args.on_error)
    with open_vault(settings) as vault:
        values = vault.get_all_secrets(policy)
    for key in sorted(values):
        print(f"{key}={values[key]}")
    return 0


def cmd_exec(args, settings: Settings):
    """
    Run a command with every secret injected as an environment variable.

    Example:
        envseal exec -- npm start
    """
    # Strip leading '--' separator if present (argparse.REMAINDER includes it)
    command = args.exec_command
    if command and command[0] == "--":
        command = command[1:]

    if not command:
        err_console.print("[red]Error:[/red] No command specified (e.g. envseal exec -- npm start)")
        return 1

    with open_vault(settings) as vault:
        values = vault.get_all_secrets(UnsealPolicy(args.on_error))

    env = os.environ.copy()
    env.update(values)
    logger.debug("Injected %d secrets", len(values))

    try:
        result = subprocess.run(command, env=env, shell=False)
    except FileNotFoundError:
        err_console.print(f"[red]Error:[/red] command {command[0]!r} not found in PATH")
        return 127
    return result.returncode


def cmd_users(args, settings: Settings):
    """Manage the roster."""
    roster = Roster.load(FileStore(settings.manifest_file))

    if args.users_command == "add":
        user = roster.add_user(args.name, args.public_key)
        roster.save()
        console.print(f"[green]✓[/green] User {user.name!r} added to {settings.manifest_file}")
        console.print("[dim]Run 'envseal rekey' to grant access to the secrets file.[/dim]")
        return 0

    if args.users_command == "remove":
        roster.remove_user_strict(args.identifier)
        roster.save()
        console.print(f"[green]✓[/green] User {escape(args.identifier.strip())!r} removed from {settings.manifest_file}")
        console.print(
            "\n[bold red]SECURITY WARNING:[/bold red] the user may still decrypt the current file "
            "if they already hold the old encryption key."
        )
        console.print("You MUST run [bold]envseal rekey --rotate[/bold] to revoke their access.")
        return 0

    users = roster.users
    if not users:
        console.print("[dim]No users in roster.[/dim]")
        return 0

    table = Table(title=roster.project_name or "Roster", show_header=True)
    table.add_column("Name", style="cyan")
    table.add_column("Public key", style="dim")
    for user in users:
        table.add_row(user.name, user.public_key)
    console.print(table)
    return 0


def cmd_rekey(args, settings: Settings):
    """Sync the secrets file recipients with the roster."""
    roster = Roster.load(FileStore(settings.manifest_file))
    recipients = roster.public_keys()
    if not recipients:
        raise EnvsealError("manifest has no recipients; add at least one user before rekey")
    console.print(f"Target recipients: {len(recipients)}")

    with open_vault(settings) as vault:
        if args.rotate:
            console.print("[yellow]Rotation mode:[/yellow] new key, re-encrypting all secrets...")
            vault.rotate_key(recipients)
            console.print("[green]✓[/green] Key rotated and data re-encrypted.")
        else:
            console.print("[cyan]Standard mode:[/cyan] updating recipients only...")
            vault.rewrap_recipients(recipients)
            console.print("[green]✓[/green] Access headers updated.")
        vault.save()

    console.print("\nRemember to commit the changes:")
    console.print(f"[cyan]  git add {settings.manifest_file} {settings.secrets_file}[/cyan]")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="envseal",
        description="Encrypted secrets files you can commit - one key per project, wrapped for every team member",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  envseal init                          # Create identity, envseal.yaml and secrets.enc.yaml
  envseal set API_KEY=123 DEBUG=true    # Add or update secrets
  envseal print                         # Show KEY=VALUE lines
  envseal exec -- npm start             # Run with secrets in the environment
  envseal users add jane envseal1...    # Authorize a teammate
  envseal rekey                         # Re-wrap the key for the roster
  envseal rekey --rotate                # New key, revokes removed users

Environment:
  ENVSEAL_SECRETS_FILE    Override secrets file (default: ./secrets.enc.yaml)
  ENVSEAL_MANIFEST_FILE   Override manifest file (default: ./envseal.yaml)
  ENVSEAL_IDENTITY_FILE   Override identity file (default: ~/.envseal/identity)
  ENVSEAL_LOG_LEVEL       Log level (default: WARNING)
        """
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-f", "--file", type=Path, help="Secrets file")
    parser.add_argument("-m", "--manifest", type=Path, help="Manifest file")
    parser.add_argument("-i", "--identity", type=Path, help="Identity file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("status", help="Show status and configuration")

    init_parser = subparsers.add_parser("init", help="Initialize envseal in the current directory")
    init_parser.add_argument("--name", help="Project name (default: current directory name)")

    subparsers.add_parser("whoami", help="Show your public key")
    subparsers.add_parser("list", help="List secret keys")

    get_parser = subparsers.add_parser("get", help="Print one decrypted value")
    get_parser.add_argument("key", help="Secret key")

    set_parser = subparsers.add_parser("set", help="Add or update secrets")
    set_parser.add_argument("pairs", nargs="+", metavar="KEY=VALUE")

    unset_parser = subparsers.add_parser("unset", help="Remove secrets")
    unset_parser.add_argument("keys", nargs="+", metavar="KEY")

    print_parser = subparsers.add_parser("print", help="Print decrypted KEY=VALUE lines")
    print_parser.add_argument("--strict", action="store_true", help="Fail on any value that cannot be decrypted")
    print_parser.add_argument(
        "--on-error", choices=[p.value for p in UnsealPolicy], default=UnsealPolicy.RAW.value,
        help="What to show for values that cannot be decrypted (default: raw)",
    )

    exec_parser = subparsers.add_parser("exec", help="Run command with secrets injected")
    exec_parser.add_argument(
        "--on-error", choices=[p.value for p in UnsealPolicy], default=UnsealPolicy.STRICT.value,
        help="What to inject for values that cannot be decrypted (default: strict, refuse to run)",
    )
    exec_parser.add_argument("exec_command", nargs=argparse.REMAINDER, help="Command to run")

    users_parser = subparsers.add_parser("users", help="Manage access control (manifest)")
    users_sub = users_parser.add_subparsers(dest="users_command")
    users_sub.add_parser("list", help="List users")
    users_add = users_sub.add_parser("add", help="Add a user")
    users_add.add_argument("name", help="User alias")
    users_add.add_argument("public_key", help="User public key (envseal1...)")
    users_remove = users_sub.add_parser("remove", help="Remove a user")
    users_remove.add_argument("identifier", help="Alias or public key")

    rekey_parser = subparsers.add_parser("rekey", help="Sync recipients with the manifest")
    rekey_parser.add_argument("--rotate", action="store_true",
                              help="Generate a new key and re-encrypt all data (revocation)")

    return parser


COMMANDS = {
    "status": cmd_status,
    "init": cmd_init,
    "whoami": cmd_whoami,
    "list": cmd_list,
    "get": cmd_get,
    "set": cmd_set,
    "unset": cmd_unset,
    "print": cmd_print,
    "exec": cmd_exec,
    "users": cmd_users,
    "rekey": cmd_rekey,
}


def main(argv=None):
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    setup_logging(args.verbose)
    settings = Settings.from_env(args.file, args.manifest, args.identity)

    try:
        return COMMANDS[args.command](args, settings)
    except EnvsealError as e:
        err_console.print(f"[red]Error:[/red] {escape(str(e))}")
        return 1
    except OSError as e:
        err_console.print(f"[red]Error:[/red] {escape(str(e))}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
