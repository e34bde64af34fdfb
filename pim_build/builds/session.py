"""Build session bookkeeping.

A BuildSession tracks one build's progress through BuildState and owns
every resource the build acquires: the running VM, the answer-file
server, the temporary directory, the SSH connection. Each acquisition
registers an idempotent cleanup action; the actions run in reverse order
when the session exits, whether the build succeeded, raised, or was
interrupted.

Usage:
    with BuildSession("default", "arm64") as session:
        session.advance(BuildState.DISK_CREATED)
        session.defer("remove temp dir", lambda: shutil.rmtree(tmp, ignore_errors=True))
        ...
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from types import TracebackType

from pim_build.errors import BuildError
from pim_build.types import BUILD_STATE_ORDER, BuildState

logger = logging.getLogger(__name__)

# Called with (level, message); level is one of REPORT_LEVELS
Reporter = Callable[[str, str], None]

REPORT_LEVELS = ("info", "progress", "success", "warning", "error")

_LOG_LEVELS = {
    "info": logging.INFO,
    "progress": logging.DEBUG,
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


@dataclass
class CleanupAction:
    """One registered teardown step."""

    description: str
    action: Callable[[], None]


class BuildSession:
    """State and owned resources of a single build.

    Args:
        profile: Profile name being built.
        arch: Canonical target architecture.
        reporter: Optional callback receiving user-facing progress lines.
    """

    def __init__(self, profile: str, arch: str, reporter: Reporter | None = None) -> None:
        self.profile = profile
        self.arch = arch
        self.reporter = reporter
        self.state = BuildState.PENDING
        self.history: list[BuildState] = [BuildState.PENDING]
        self.error: BaseException | None = None
        self._cleanups: list[CleanupAction] = []

    def __enter__(self) -> BuildSession:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if exc is not None and self.state is not BuildState.FAILED:
            self.fail(exc)
        self.teardown()

    # State

    def advance(self, state: BuildState) -> None:
        """Move to the next state.

        Raises:
            BuildError: If ``state`` is not the immediate successor of the
                current state.
        """
        if self.state is BuildState.FAILED:
            raise BuildError(f"Cannot advance to {state.value}: build already failed")
        position = BUILD_STATE_ORDER.index(self.state)
        expected = BUILD_STATE_ORDER[position + 1] if position + 1 < len(BUILD_STATE_ORDER) else None
        if state is not expected:
            raise BuildError(
                f"Invalid build state transition: {self.state.value} -> {state.value}"
            )
        logger.debug("%s-%s: %s -> %s", self.profile, self.arch, self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def fail(self, error: BaseException) -> None:
        """Record a terminal failure. Allowed from any state."""
        if self.state is BuildState.FAILED:
            return
        logger.debug("%s-%s failed in %s: %s", self.profile, self.arch, self.state.value, error)
        self.error = error
        self.state = BuildState.FAILED
        self.history.append(BuildState.FAILED)

    @property
    def succeeded(self) -> bool:
        return self.state is BuildState.REGISTERED

    # Progress

    def report(self, message: str, level: str = "info") -> None:
        """Send a progress line to the reporter and the log."""
        logger.log(_LOG_LEVELS.get(level, logging.INFO), message)
        if self.reporter is not None:
            self.reporter(level, message)

    # Resources

    def defer(self, description: str, action: Callable[[], None]) -> None:
        """Register a cleanup action to run at teardown."""
        self._cleanups.append(CleanupAction(description, action))

    def make_temp_dir(self) -> Path:
        """Create a private temporary directory removed at teardown."""
        path = Path(tempfile.mkdtemp(prefix=f"pim-{self.profile}-{self.arch}-"))
        self.defer(f"remove {path}", lambda: shutil.rmtree(path, ignore_errors=True))
        return path

    @property
    def pending_cleanups(self) -> list[str]:
        return [c.description for c in self._cleanups]

    def teardown(self) -> None:
        """Run cleanup actions in reverse registration order.

        Never raises: a failing action is logged and the rest still run.
        """
        while self._cleanups:
            cleanup = self._cleanups.pop()
            logger.debug("Cleanup: %s", cleanup.description)
            try:
                cleanup.action()
            except Exception as e:
                logger.warning("Cleanup step failed (%s): %s", cleanup.description, e)


__all__ = ["REPORT_LEVELS", "BuildSession", "CleanupAction", "Reporter"]
