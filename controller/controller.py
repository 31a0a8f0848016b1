#!/usr/bin/env python3
"""
relayshell Controller
Operator side: connects to remote agents and dispatches shell commands.

Responsibilities:
- Load host list and mode from controller.ini
- Refuse to start twice on the same machine
- Automatic mode: deliver each host's auto-command script, with retries
- Manual mode: pick hosts, then type commands fanned out to all of them
- Keep a bounded error log
"""

import argparse
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import List, Optional

# Local modules
from .config import DEFAULT_CONFIG_FILE, ConfigError, ControllerConfig, load_config
from .dispatch import DispatchError, Dispatcher, Response
from .hosts import HostDescriptor
from .lock import DEFAULT_LOCK_FILE, AlreadyRunning, InstanceLock

log = logging.getLogger("controller")


def setup_logging(path: str, max_bytes: int = 64 * 1024, backups: int = 1) -> logging.Logger:
    """Attach a size-capped log file to the controller package logger."""
    root = logging.getLogger("controller")
    root.setLevel(logging.INFO)
    if not root.handlers:
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        fh = RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backups,
                                 encoding="utf-8")
        fh.setFormatter(logging.Formatter(
            "%(asctime)s  %(levelname)-7s  %(name)s  %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
        root.addHandler(fh)
    return root


def choose_hosts(hosts: List[HostDescriptor], answer: str) -> List[HostDescriptor]:
    """Resolve a manual-mode selection: a 1-based index or 'all'."""
    answer = answer.strip().lower()
    if answer == "all":
        return list(hosts)
    try:
        index = int(answer)
    except ValueError:
        raise ValueError(f"not a host number: {answer!r}") from None
    if not 1 <= index <= len(hosts):
        raise ValueError(f"host number must be between 1 and {len(hosts)}")
    return [hosts[index - 1]]


def print_hosts(hosts: List[HostDescriptor]):
    print("\n=== Hosts ===")
    for number, host in enumerate(hosts, 1):
        print(f"  {number}. {host.name:<16} {host.address}:{host.port}")
    print("=============\n")


def print_response(response: Response):
    print(f"[{response.host}] {response.text}")


def read_command() -> Optional[str]:
    try:
        return input(">>> ")
    except EOFError:
        return None


def run_manual(config: ControllerConfig) -> int:
    if not sys.stdin.isatty():
        print("[!] Manual mode must be run from an interactive terminal.", file=sys.stderr)
        return 1

    print_hosts(config.hosts)
    try:
        hosts = choose_hosts(config.hosts, input("Select host number or 'all': "))
    except (ValueError, EOFError) as e:
        print(f"[!] Invalid selection: {e}", file=sys.stderr)
        return 1

    # Manual mode is single-shot: a connection error is fatal at once
    config.settings.max_retries = 1
    dispatcher = Dispatcher(hosts, config.settings, status=_status_printer(False))
    try:
        dispatcher.run_interactive(read_command, print_response)
    except DispatchError as e:
        print(f"[!] {e}. Please check the config and ensure the agent is "
              f"running and the port is correct.", file=sys.stderr)
        log.error("manual run failed: %s", e)
        return 1
    except KeyboardInterrupt:
        print("\n[i] Interrupted, closing connections...")
        dispatcher.close_all()
    return 0


def run_automatic(config: ControllerConfig) -> int:
    dispatcher = Dispatcher(config.hosts, config.settings,
                            status=_status_printer(config.silent))
    try:
        delivered = dispatcher.run_automatic()
    except KeyboardInterrupt:
        print("\n[i] Interrupted, closing connections...")
        return 1
    finally:
        dispatcher.close_all()
    if not delivered:
        print("[!] Could not reach any host.", file=sys.stderr)
        return 1
    if not config.silent:
        print("[i] Operation completed.")
    return 0


def _status_printer(silent: bool):
    def status(message: str):
        log.info(message)
        if not silent:
            print(f"[i] {message}")
    return status


def _prompt(question: str) -> str:
    return input(question)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="relayshell Controller — dispatch commands to remote agents")
    parser.add_argument("--config", "-c", default=DEFAULT_CONFIG_FILE,
                        help=f"Configuration file (default: {DEFAULT_CONFIG_FILE})")
    parser.add_argument("--mode", "-m", choices=("automatic", "manual"),
                        help="Override the configured execution mode")
    parser.add_argument("--silent", "-s", action="store_true",
                        help="Only write errors to the log file")
    parser.add_argument("--log-file", help="Override the configured log file")
    parser.add_argument("--lock-file", default=DEFAULT_LOCK_FILE,
                        help=f"Single-instance lock file (default: {DEFAULT_LOCK_FILE})")

    args = parser.parse_args(argv)

    lock = InstanceLock(args.lock_file)
    try:
        lock.acquire()
    except AlreadyRunning as e:
        print(f"[!] {e}", file=sys.stderr)
        return 1

    try:
        try:
            config = load_config(args.config, prompt=_prompt if sys.stdin.isatty() else None)
        except ConfigError as e:
            print(f"[!] Invalid configuration: {e}", file=sys.stderr)
            return 1
        if args.mode:
            config.mode = args.mode
        if args.silent:
            config.silent = True
        setup_logging(args.log_file or config.log_file, config.log_max_bytes, config.log_backups)
        log.info("controller starting: mode=%s hosts=%s", config.mode,
                 ", ".join(h.label for h in config.hosts))

        if config.automatic:
            return run_automatic(config)
        return run_manual(config)
    finally:
        lock.release()


if __name__ == "__main__":
    sys.exit(main())
