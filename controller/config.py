"""
relayshell Controller Configuration
INI file holding the controller settings and one [host:*] section per agent.

Missing host values are asked for on the terminal (when there is one) and
saved back, so the next run starts without questions.
"""

import configparser
import logging
import os
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .dispatch import DispatchSettings
from .hosts import HostDescriptor

log = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "controller.ini"
DEFAULT_LOG_FILE = os.path.join("logs", "relayshell_controller.log")
SECTION = "controller"
HOST_PREFIX = "host:"
MODES = ("automatic", "manual")

Prompt = Callable[[str], str]

DEFAULT_CONFIG = {
    SECTION: {
        "mode": "automatic",
        "silent": "false",
        "command_delay": "1.0",
        "handshake_delay": "1.0",
        "retry_interval": "5.0",
        "max_retries": "5",
        "connect_timeout": "10",
        "read_timeout": "30",
        "log_file": DEFAULT_LOG_FILE,
    },
    HOST_PREFIX + "ryu": {
        "address": "192.168.0.66",
        "port": "8887",
        "name": "ryu",
        "auto_command": "uptime; exit",
    },
}


class ConfigError(Exception):
    pass


@dataclass
class ControllerConfig:
    path: str = DEFAULT_CONFIG_FILE
    mode: str = "automatic"
    silent: bool = False
    log_file: str = DEFAULT_LOG_FILE
    log_max_bytes: int = 64 * 1024
    log_backups: int = 1
    settings: DispatchSettings = field(default_factory=DispatchSettings)
    hosts: List[HostDescriptor] = field(default_factory=list)

    @property
    def automatic(self) -> bool:
        return self.mode == "automatic"


def _new_parser() -> configparser.ConfigParser:
    # No interpolation and no inline comments: commands may contain '%' and ';'
    return configparser.ConfigParser(interpolation=None)


def write_default(path: str):
    parser = _new_parser()
    parser.read_dict(DEFAULT_CONFIG)
    _save(parser, path)
    log.info("wrote default configuration to %s", path)


def _save(parser: configparser.ConfigParser, path: str):
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        parser.write(f)


def load_config(path: str = DEFAULT_CONFIG_FILE, prompt: Optional[Prompt] = None) -> ControllerConfig:
    """Read the controller configuration, creating a default file if missing.

    `prompt` is used to ask for missing host values; without it a missing
    value is a ConfigError.
    """
    if not os.path.exists(path):
        write_default(path)

    parser = _new_parser()
    try:
        with open(path, encoding="utf-8") as f:
            parser.read_file(f)
    except (OSError, configparser.Error) as e:
        raise ConfigError(f"cannot read {path}: {e}") from e

    if not parser.has_section(SECTION):
        parser.add_section(SECTION)
    section = parser[SECTION]

    config = ControllerConfig(path=path)
    mode = section.get("mode", config.mode).strip().lower()
    if mode not in MODES:
        log.warning("unknown mode %r in %s, using %s", mode, path, config.mode)
    else:
        config.mode = mode
    config.silent = _get(section.getboolean, "silent", False)
    config.log_file = section.get("log_file", DEFAULT_LOG_FILE)
    config.log_max_bytes = _get(section.getint, "log_max_bytes", config.log_max_bytes)
    config.log_backups = _get(section.getint, "log_backups", config.log_backups)

    defaults = DispatchSettings()
    read_timeout = _get(section.getfloat, "read_timeout", defaults.read_timeout)
    config.settings = DispatchSettings(
        command_delay=_get(section.getfloat, "command_delay", defaults.command_delay),
        handshake_delay=_get(section.getfloat, "handshake_delay", defaults.handshake_delay),
        retry_interval=_get(section.getfloat, "retry_interval", defaults.retry_interval),
        max_retries=max(1, _get(section.getint, "max_retries", defaults.max_retries)),
        connect_timeout=_get(section.getfloat, "connect_timeout", defaults.connect_timeout),
        read_timeout=read_timeout if read_timeout else None,
    )

    changed = False
    host_sections = [name for name in parser.sections() if name.startswith(HOST_PREFIX)]
    if not host_sections:
        if prompt is None:
            raise ConfigError(f"no hosts defined in {path}")
        parser.add_section(HOST_PREFIX + "1")
        host_sections.append(HOST_PREFIX + "1")

    for name in host_sections:
        host, host_changed = _load_host(parser[name], prompt)
        config.hosts.append(host)
        changed = changed or host_changed

    if changed:
        _save(parser, path)
    return config


def _get(getter, key, default):
    """Read one typed value, falling back to the default when malformed."""
    try:
        value = getter(key, fallback=default)
    except ValueError:
        log.warning("malformed value for %r, using default %r", key, default)
        return default
    return default if value is None else value


def parse_port(raw) -> Optional[int]:
    try:
        port = int(str(raw).strip())
    except ValueError:
        return None
    if not 0 <= port <= 65535:
        return None
    return port


def _ask(prompt: Optional[Prompt], question: str, section: str, key: str) -> str:
    if prompt is None:
        raise ConfigError(f"[{section}] has no valid '{key}' and there is no terminal to ask on")
    try:
        answer = prompt(question)
    except EOFError:
        raise ConfigError(f"[{section}] no '{key}' given (end of input)") from None
    return answer.strip()


def _load_host(values: configparser.SectionProxy, prompt: Optional[Prompt]):
    changed = False
    section = values.name

    address = values.get("address", "").strip()
    if not address:
        address = _ask(prompt, "Enter server IP: ", section, "address")
        if not address:
            raise ConfigError(f"[{section}] no server address given")
        values["address"] = address
        changed = True

    port = parse_port(values.get("port", ""))
    if port is None:
        if values.get("port", "").strip():
            log.warning("[%s] malformed port %r", section, values["port"])
        port = parse_port(_ask(prompt, "Enter port: ", section, "port"))
        if port is None:
            raise ConfigError("Port number must be between 0 and 65535.")
        values["port"] = str(port)
        changed = True

    name = values.get("name", "").strip()
    if not name:
        name = _ask(prompt, "Enter your name: ", section, "name")
        if not name:
            raise ConfigError(f"[{section}] no client name given")
        values["name"] = name
        changed = True

    host = HostDescriptor(address=address, port=port, name=name,
                          auto_command=values.get("auto_command", ""))
    return host, changed
