"""
relayshell Agent Configuration
agent.ini holds the listening address and port. The listener re-reads it
before every accept so a port change applies without a restart.
"""

import configparser
import logging
import os
from dataclasses import dataclass
from typing import Optional

log = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "agent.ini"
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8887
DEFAULT_LOG_FILE = os.path.join("logs", "relayshell_agent.log")
SECTION = "agent"


class ConfigError(Exception):
    pass


@dataclass
class AgentConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    log_file: str = DEFAULT_LOG_FILE


def write_default(path: str):
    parser = configparser.ConfigParser(interpolation=None)
    parser[SECTION] = {
        "host": DEFAULT_HOST,
        "port": str(DEFAULT_PORT),
        "log_file": DEFAULT_LOG_FILE,
    }
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        parser.write(f)
    log.info("wrote default configuration to %s", path)


def load_config(path: str = DEFAULT_CONFIG_FILE, previous: Optional[AgentConfig] = None) -> AgentConfig:
    """Read agent.ini, writing a default one first if it does not exist.

    A malformed port keeps the previous value (or the default on first load).
    """
    if not os.path.exists(path):
        write_default(path)
    parser = configparser.ConfigParser(interpolation=None)
    try:
        with open(path, encoding="utf-8") as f:
            parser.read_file(f)
    except (OSError, configparser.Error) as e:
        raise ConfigError(f"cannot read {path}: {e}") from e

    base = previous or AgentConfig()
    if not parser.has_section(SECTION):
        return base
    section = parser[SECTION]

    port = base.port
    raw = section.get("port", str(base.port))
    try:
        value = int(raw)
        if not 0 <= value <= 65535:
            raise ValueError(raw)
        port = value
    except ValueError:
        log.warning("malformed port %r in %s, keeping %d", raw, path, port)

    return AgentConfig(
        host=section.get("host", base.host).strip() or DEFAULT_HOST,
        port=port,
        log_file=section.get("log_file", base.log_file),
    )
