#!/usr/bin/env python3
"""
relayshell Agent
Remote side: accepts controller connections and runs their commands.

Responsibilities:
- Listen on the port from agent.ini, rebinding when it changes
- One session thread per controller connection
- Keep the registry of connected controllers
- Keep a bounded audit log of connections and commands
"""

import argparse
import logging
import os
import select
import socket
import sys
import threading
from logging.handlers import RotatingFileHandler
from typing import Optional, Tuple

# Local modules
from .config import DEFAULT_CONFIG_FILE, AgentConfig, ConfigError, load_config
from .executor import CommandExecutor
from .handler import SessionHandler
from .registry import ClientRegistry

log = logging.getLogger("agent")


def setup_logging(path: str, max_bytes: int = 1024 * 1024, backups: int = 3) -> logging.Logger:
    """Attach a size-capped log file to the agent package logger."""
    root = logging.getLogger("agent")
    root.setLevel(logging.INFO)
    if not root.handlers:
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        fh = RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backups,
                                 encoding="utf-8")
        fh.setFormatter(logging.Formatter(
            "%(asctime)s  %(levelname)-7s  %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
        root.addHandler(fh)
    return root


class AgentServer:
    def __init__(self, config_path: str = DEFAULT_CONFIG_FILE,
                 port: Optional[int] = None,
                 registry: Optional[ClientRegistry] = None,
                 executor: Optional[CommandExecutor] = None,
                 poll_interval: float = 1.0):
        self.config_path = config_path
        self.port_override = port
        self.registry = registry if registry is not None else ClientRegistry()
        self.executor = executor if executor is not None else CommandExecutor()
        self.poll_interval = poll_interval
        self.config = AgentConfig()
        self.running = True
        self.ready = threading.Event()
        self._sock: Optional[socket.socket] = None
        self._bound: Optional[Tuple[str, int]] = None

    @property
    def address(self) -> Optional[Tuple[str, int]]:
        """Actual (host, port) of the listening socket."""
        sock = self._sock
        return sock.getsockname()[:2] if sock is not None else None

    def reload(self):
        """Re-read the config and rebind if the listening address changed."""
        self.config = load_config(self.config_path, self.config)
        if self.port_override is not None:
            self.config.port = self.port_override
        wanted = (self.config.host, self.config.port)
        if self._sock is None or wanted != self._bound:
            self._rebind(wanted)

    def _rebind(self, wanted: Tuple[str, int]):
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind(wanted)
            sock.listen(50)
        except OSError as e:
            sock.close()
            if self._sock is None:
                raise
            # Keep serving on the old socket until the config changes again
            log.error("cannot listen on %s:%d: %s", wanted[0], wanted[1], e)
            print(f"[!] Cannot listen on {wanted[0]}:{wanted[1]}: {e}", file=sys.stderr)
            self._bound = wanted
            return
        if self._sock is not None:
            self._sock.close()
        self._sock = sock
        self._bound = wanted
        host, port = self.address
        print(f"[+] Agent listening on {host}:{port}")
        log.info("LISTEN  host=%s  port=%d", host, port)
        self.ready.set()

    def serve_forever(self):
        """Accept controllers until stop() is called."""
        try:
            while self.running:
                try:
                    self.reload()
                except ConfigError as e:
                    if self._sock is None:
                        raise
                    log.error("config reload failed: %s", e)
                # select lets stop() and config changes take effect without a connection
                ready, _, _ = select.select([self._sock], [], [], self.poll_interval)
                if not ready or not self.running:
                    continue
                try:
                    conn, addr = self._sock.accept()
                except OSError as e:
                    log.warning("accept failed: %s", e)
                    continue
                self._spawn(conn, addr)
        finally:
            self.close()

    def _spawn(self, conn: socket.socket, addr: Tuple[str, int]):
        handler = SessionHandler(conn, addr[0], self.registry, self.executor)
        threading.Thread(
            target=handler.run,
            daemon=True,
            name=f"session-{addr[0]}:{addr[1]}",
        ).start()

    def stop(self):
        self.running = False

    def close(self):
        if self._sock is not None:
            try:
                self._sock.close()
            except OSError as e:
                log.warning("error closing listener: %s", e)
            self._sock = None


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="relayshell Agent — run commands sent by a controller")
    parser.add_argument("--config", "-c", default=DEFAULT_CONFIG_FILE,
                        help=f"Configuration file (default: {DEFAULT_CONFIG_FILE})")
    parser.add_argument("--port", "-p", type=int,
                        help="Listen on this port instead of the configured one")

    args = parser.parse_args(argv)
    if args.port is not None and not 0 <= args.port <= 65535:
        parser.error("port must be between 0 and 65535")

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"[!] Invalid configuration: {e}", file=sys.stderr)
        return 1
    setup_logging(config.log_file)

    server = AgentServer(args.config, port=args.port)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        print("\n[!] Shutting down agent...")
    except (ConfigError, OSError) as e:
        print(f"[!] Agent failed: {e}", file=sys.stderr)
        log.error("agent failed: %s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
