"""Single-instance guard for the controller."""

import atexit
import logging
import os

log = logging.getLogger(__name__)

DEFAULT_LOCK_FILE = "relayshell_controller.lock"


class AlreadyRunning(Exception):
    pass


class InstanceLock:
    """Lock file created exclusively on acquire and removed on release."""

    def __init__(self, path: str = DEFAULT_LOCK_FILE):
        self.path = path
        self.held = False

    def acquire(self):
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            raise AlreadyRunning("Another instance is already running.") from None
        with os.fdopen(fd, "w") as f:
            f.write(str(os.getpid()))
        self.held = True
        atexit.register(self.release)

    def release(self):
        if not self.held:
            return
        self.held = False
        try:
            os.remove(self.path)
        except OSError as e:
            log.warning("could not remove lock file %s: %s", self.path, e)

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
