from __future__ import annotations

import atexit
import logging
import os
import shutil
import signal
import sys
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .client import SkillportError

logger = logging.getLogger(__name__)

TEMP_PREFIX = "skillport-"


@contextmanager
def best_effort(description: str) -> Iterator[None]:
    """Run a cleanup step, logging instead of raising when it fails."""
    try:
        yield
    except (OSError, SkillportError) as e:
        logger.debug("Ignoring failure while %s: %s", description, e)


class TempRegistry:
    """
    Tracks the temporary directories created by clones, downloads and remote fetches.

    Only paths strictly inside ``root`` (the system temp dir by default) are ever removed.
    """

    def __init__(self, root: str | Path | None = None) -> None:
        self.root = Path(root) if root is not None else Path(tempfile.gettempdir())
        self._dirs: set[Path] = set()
        self._lock = threading.Lock()
        self._handlers_installed = False

    def __enter__(self) -> "TempRegistry":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cleanup_all()

    @property
    def registered(self) -> list[Path]:
        with self._lock:
            return sorted(self._dirs)

    def is_safe(self, path: str | Path) -> bool:
        root_n = os.path.normpath(os.path.abspath(self.root))
        path_n = os.path.normpath(os.path.abspath(path))
        return path_n.startswith(root_n.rstrip(os.sep) + os.sep)

    def make_dir(self, prefix: str = TEMP_PREFIX) -> Path:
        path = Path(tempfile.mkdtemp(prefix=prefix, dir=self.root))
        self.register(path)
        return path

    def register(self, path: str | Path) -> None:
        with self._lock:
            self._dirs.add(Path(path))

    def unregister(self, path: str | Path) -> None:
        with self._lock:
            self._dirs.discard(Path(path))

    def cleanup(self, path: str | Path) -> None:
        p = Path(path)
        if not self.is_safe(p):
            raise SkillportError(f"Refusing to remove directory outside of {self.root}: {p}")
        try:
            if p.exists():
                shutil.rmtree(p)
        finally:
            self.unregister(p)

    def cleanup_all(self) -> None:
        for path in self.registered:
            with best_effort(f"removing {path}"):
                self.cleanup(path)

    def install_signal_handlers(self) -> None:
        if self._handlers_installed:
            return
        self._handlers_installed = True
        atexit.register(self.cleanup_all)

        def _handler(signum, frame) -> None:
            self.cleanup_all()
            sys.exit(128 + signum)

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                signal.signal(sig, _handler)
            except ValueError:
                # Not the main thread of the main interpreter.
                logger.debug("Cannot install handler for %s", sig)
