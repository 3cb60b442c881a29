"""
Command-line interface for lockbox.
"""

import argparse
import logging
import os
import sys
import threading
from getpass import getpass

from .config import Config
from .core import Lockbox
from .errors import LockboxError
from .logging_config import setup_logging
from .system import check_dependencies


# ANSI colors
class Colors:
    RED = "\033[0;31m"
    GREEN = "\033[0;32m"
    YELLOW = "\033[0;33m"
    BLUE = "\033[0;34m"
    NC = "\033[0m"  # No Color


def log_info(msg: str) -> None:
    print(f"{Colors.BLUE}[INFO]{Colors.NC} {msg}")


def log_ok(msg: str) -> None:
    print(f"{Colors.GREEN}[OK]{Colors.NC} {msg}")


def log_warn(msg: str) -> None:
    print(f"{Colors.YELLOW}[WARN]{Colors.NC} {msg}")


def log_error(msg: str) -> None:
    print(f"{Colors.RED}[ERROR]{Colors.NC} {msg}", file=sys.stderr)


def format_size(size_bytes: int) -> str:
    """Format bytes to human-readable size."""
    for unit in ["B", "K", "M", "G", "T"]:
        if size_bytes < 1024:
            if unit == "B":
                return f"{size_bytes}{unit}"
            return f"{size_bytes:.1f}{unit}"
        size_bytes /= 1024
    return f"{size_bytes:.1f}P"


def read_password(confirm: bool = False) -> str:
    """Password from $LOCKBOX_PASSWORD or the terminal."""
    password = os.environ.get("LOCKBOX_PASSWORD")
    if password:
        return password
    password = getpass("Password: ")
    if confirm and getpass("Repeat password: ") != password:
        raise LockboxError("Passwords do not match")
    return password


def print_results(results: list[dict]) -> bool:
    """Print per-application results. Returns True if all succeeded."""
    ok = True
    for r in results:
        if r["success"]:
            log_ok(r["message"])
        else:
            log_error(r["message"])
            ok = False
    return ok


def cmd_create(lockbox: Lockbox, args: argparse.Namespace) -> int:
    """Create a new container."""
    password = read_password(confirm=True)
    log_info(f"Creating encrypted container '{args.name}' ({args.size}GB)...")
    result = lockbox.create_container(args.name, password, args.size)
    log_ok(result["message"])
    log_info(f"Location: {lockbox.store.container_file(args.name)}")
    return 0


def cmd_mount(lockbox: Lockbox, args: argparse.Namespace) -> int:
    """Mount a container."""
    password = read_password()
    result = lockbox.mount_container(args.name, password)
    log_ok(f"{result['message']} at {result['mount_point']}")
    for warning in result["warnings"]:
        log_warn(warning)
    return 0


def cmd_unmount(lockbox: Lockbox, args: argparse.Namespace) -> int:
    """Unmount a container."""
    result = lockbox.unmount_container(args.name)
    log_ok(result["message"])
    return 0


def _watch(lockbox: Lockbox, name: str, wait_ready: bool) -> int:
    """Keep the process alive while the container is monitored."""
    stop = threading.Event()
    try:
        if wait_ready:
            log_info("Waiting for application to become reachable (Ctrl-C to stop waiting)...")
            if lockbox.wait_until_ready(name, cancel=stop):
                log_ok("Application is reachable")

        log_info("Watching for inactivity. Press Ctrl-C to stop watching.")
        while lockbox.monitor.is_monitoring(name):
            stop.wait(1.0)
    except KeyboardInterrupt:
        stop.set()
        log_warn("Stopped watching: the volume stays mounted without inactivity protection")
        return 130

    status = lockbox.get_status(name)
    if not status["mounted"]:
        log_ok(f"Container '{name}' was dismounted after inactivity")
    return 0


def cmd_start(lockbox: Lockbox, args: argparse.Namespace) -> int:
    """Start applications in a container."""
    result = lockbox.start_applications(args.name)
    if not result["results"]:
        log_warn("No enabled applications to start")
        return 0
    if not print_results(result["results"]):
        return 1

    if args.detach:
        log_warn("Detached: no inactivity protection without a running lockbox process")
        return 0
    return _watch(lockbox, args.name, args.wait)


def cmd_stop(lockbox: Lockbox, args: argparse.Namespace) -> int:
    """Stop applications in a container."""
    result = lockbox.stop_applications(args.name)
    if not result["results"]:
        log_info("Nothing to stop")
        return 0
    return 0 if print_results(result["results"]) else 1


def cmd_verify(lockbox: Lockbox, args: argparse.Namespace) -> int:
    """Check a container password."""
    if lockbox.verify_password(args.name, read_password()):
        log_ok("Password is valid")
        return 0
    log_error("Invalid password")
    return 1


def cmd_delete(lockbox: Lockbox, args: argparse.Namespace) -> int:
    """Delete a container."""
    if not args.yes:
        answer = input(f"Delete container '{args.name}' and all its data? [y/N] ")
        if answer.strip().lower() not in ("y", "yes"):
            log_info("Aborted")
            return 1

    password = read_password() if lockbox.store.exists(args.name) else ""
    result = lockbox.delete_container(args.name, password)
    for detail in result["details"]:
        print(f"  {detail}")
    if "warning" in result:
        log_warn(result["warning"])
    log_ok(result["message"])
    return 0


def cmd_status(lockbox: Lockbox, args: argparse.Namespace) -> int:
    """Show container status."""
    status = lockbox.get_status(args.name)

    if not status["exists"]:
        log_error(f"Container '{args.name}' not found")
        print(f"Create it first: lockbox create {args.name}")
        return 1

    print(f"{Colors.BLUE}Container: {status['name']}{Colors.NC}")
    print(f"  Location: {lockbox.store.container_file(args.name)}")

    if status["mounted"]:
        print(f"  Volume: {Colors.GREEN}mounted{Colors.NC} at {status['mount_point']}")
    else:
        print(f"  Volume: {Colors.YELLOW}encrypted{Colors.NC}")

    print("  Applications:")
    for app in status["applications"]:
        state = "enabled" if app["enabled"] else "disabled"
        print(f"    {app['name']}: {state}")

    if status["reachable"]:
        print(f"  Application: {Colors.GREEN}reachable{Colors.NC}")
    else:
        print(f"  Application: {Colors.YELLOW}not reachable{Colors.NC}")

    if status["monitoring_active"]:
        timeout = status["config"]["auto_unmount_timeout_minutes"] if status["config"] else "?"
        print(f"  Monitoring: {Colors.GREEN}active{Colors.NC} "
              f"(inactive {status['minutes_inactive']} of {timeout} minutes)")
    elif status["mounted"]:
        print(f"  Monitoring: {Colors.YELLOW}not active{Colors.NC}")
        log_warn("Mounted without inactivity protection. Start applications or unmount.")

    return 0


def cmd_list(lockbox: Lockbox, args: argparse.Namespace) -> int:
    """List all containers."""
    containers = lockbox.list_containers()

    if not containers:
        log_info("No containers found")
        print("Create one with: lockbox create")
        return 0

    print(f"{Colors.BLUE}Containers:{Colors.NC}")
    for c in containers:
        if not c["exists"]:
            print(f"  {c['name']}  {Colors.RED}[ORPHANED CONFIG]{Colors.NC}")
            continue

        status = ""
        if c["mounted"]:
            status = f"{Colors.GREEN}[MOUNTED]{Colors.NC}"
        size = lockbox.store.container_file(c["name"]).stat().st_size
        print(f"  {c['name']}  ({format_size(size)}) {status}")

    return 0


def main() -> int:
    """Main entry point."""
    missing = check_dependencies()
    if missing:
        log_error(f"Missing dependencies: {', '.join(missing)}")
        print("Install with: sudo apt install cryptsetup util-linux e2fsprogs procps")
        return 1

    parser = argparse.ArgumentParser(
        prog="lockbox",
        description="Encrypted volume lifecycle manager.",
        epilog="""
Examples:
  lockbox create --size 5    # Create the primary container (5 GB)
  lockbox mount              # Unlock and mount it
  lockbox start              # Start applications and watch for inactivity
  lockbox status             # Show state
  lockbox unmount            # Stop applications and lock the volume
  lockbox delete             # Remove the container (asks for the password)
""",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Show debug logs")
    parser.add_argument("--log-file", help="Also write logs to this file")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")
    name_help = "Container name (default: primary)"

    p = subparsers.add_parser("create", help="Create a new encrypted container")
    p.add_argument("name", nargs="?", help=name_help)
    p.add_argument("--size", type=float, required=True, help="Size in GB")
    p.set_defaults(func=cmd_create)

    p = subparsers.add_parser("mount", help="Unlock and mount a container")
    p.add_argument("name", nargs="?", help=name_help)
    p.set_defaults(func=cmd_mount)

    p = subparsers.add_parser("unmount", help="Stop applications and lock a container")
    p.add_argument("name", nargs="?", help=name_help)
    p.set_defaults(func=cmd_unmount)

    p = subparsers.add_parser("start", help="Start applications and watch for inactivity")
    p.add_argument("name", nargs="?", help=name_help)
    p.add_argument("--detach", action="store_true",
                   help="Return immediately (no inactivity protection)")
    p.add_argument("--wait", action="store_true",
                   help="Wait until the application answers before watching")
    p.set_defaults(func=cmd_start)

    p = subparsers.add_parser("stop", help="Stop applications")
    p.add_argument("name", nargs="?", help=name_help)
    p.set_defaults(func=cmd_stop)

    p = subparsers.add_parser("verify", help="Check a container password")
    p.add_argument("name", nargs="?", help=name_help)
    p.set_defaults(func=cmd_verify)

    p = subparsers.add_parser("delete", help="Delete a container")
    p.add_argument("name", nargs="?", help=name_help)
    p.add_argument("-y", "--yes", action="store_true", help="Don't ask for confirmation")
    p.set_defaults(func=cmd_delete)

    p = subparsers.add_parser("status", help="Show container status")
    p.add_argument("name", nargs="?", help=name_help)
    p.set_defaults(func=cmd_status)

    p = subparsers.add_parser("list", help="List all containers")
    p.set_defaults(func=cmd_list)

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return 1

    setup_logging(logging.DEBUG if args.verbose else logging.WARNING, args.log_file)

    config = Config()
    if getattr(args, "name", "") is None:
        args.name = config.primary_name

    with Lockbox(config) as lockbox:
        try:
            return args.func(lockbox, args)
        except (LockboxError, ValueError) as e:
            log_error(str(e))
            return 1


if __name__ == "__main__":
    sys.exit(main())
