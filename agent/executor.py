"""
relayshell Command Executor (Agent Side)
Runs one received command line as a local process and returns its output.

- Windows: through cmd /c; shell scripts are refused
- POSIX: through /bin/sh -c; an existing *.sh file opens in a terminal
  emulator so it runs visibly on the agent's desktop
- stdout and stderr are merged; the exit status is not reported
"""

import os
import shutil
import subprocess
import sys
from typing import Callable, List, Optional, Sequence, Tuple

SCRIPT_EXTENSIONS = (".sh",)

# (executable, arguments placed before the script command)
TERMINAL_EMULATORS: Sequence[Tuple[str, Tuple[str, ...]]] = (
    ("gnome-terminal", ("--",)),
    ("konsole", ("-e",)),
    ("xfce4-terminal", ("-x",)),
    ("xterm", ("-e",)),
)


class ExecutionError(Exception):
    """The command could not be started."""


class CommandExecutor:
    def __init__(self, platform: str = sys.platform,
                 which: Callable[[str], Optional[str]] = shutil.which,
                 file_exists: Callable[[str], bool] = os.path.isfile):
        self.platform = platform
        self._which = which
        self._file_exists = file_exists

    @property
    def windows(self) -> bool:
        return self.platform.startswith("win")

    def is_script(self, command: str) -> bool:
        return command.strip().lower().endswith(SCRIPT_EXTENSIONS)

    def build(self, command: str):
        """Return the argv to run, or a diagnostic string when nothing should run."""
        if self.windows:
            if self.is_script(command):
                return "Shell scripts (.sh) are not supported on Windows."
            return ["cmd", "/c", command]

        script = command.strip()
        if self.is_script(script) and self._file_exists(script):
            terminal = self.find_terminal()
            if terminal is None:
                return f"No terminal emulator found to run {script}."
            executable, prefix = terminal
            return [executable, *prefix, "/bin/bash", script]
        return ["/bin/sh", "-c", command]

    def find_terminal(self) -> Optional[Tuple[str, Tuple[str, ...]]]:
        for name, prefix in TERMINAL_EMULATORS:
            path = self._which(name)
            if path:
                return path, prefix
        return None

    def execute(self, command: str) -> str:
        """Run the command to completion and return its combined output."""
        argv = self.build(command)
        if isinstance(argv, str):
            return argv
        return self._run(argv)

    def _run(self, argv: List[str]) -> str:
        try:
            result = subprocess.run(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
            )
        except OSError as e:
            raise ExecutionError(f"cannot start {argv[0]}: {e}") from e
        return result.stdout.decode("utf-8", errors="replace")
