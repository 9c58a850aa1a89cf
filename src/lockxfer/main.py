#!/usr/bin/env python3
"""
lockxfer - Guarded bulk file transfer with exclusive advisory locks.

Copies or moves a batch of files while holding an exclusive advisory lock on
every source, so cooperating processes cannot mutate the sources mid-transfer.

Architecture:
- A guarded run is validate -> lock all -> execute all -> unlock all
- Locks are always released, including when a step fails
- Core logic never touches stdout; the CLI layer only parses and reports
"""

import argparse
import contextlib
import fcntl
import logging
import os
import shutil
import sys
import tempfile
import time
from abc import ABC, abstractmethod
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import BinaryIO

# Constants
BUFFER_SIZE = 8 * 1024 * 1024  # 8MB


# ============================================================================
# Data Models
# ============================================================================


class Operation(Enum):
    """
    What a transfer step does with its source.

    Attributes
    ----------
    COPY : str
        Duplicate the source at the destination
    MOVE : str
        Copy to the destination, then remove the source
    """

    COPY = "copy"
    MOVE = "move"


@dataclass(frozen=True)
class TransferStep:
    """
    One source/destination/operation triple within a transfer plan.

    Attributes
    ----------
    source : Path
        File to read (and lock) during the transfer
    destination : Path
        File to create or overwrite
    operation : Operation
        Whether the source is kept (COPY) or removed afterwards (MOVE)
    """

    source: Path
    destination: Path
    operation: Operation

    def __post_init__(self) -> None:
        # Accept plain strings for paths and operation names
        object.__setattr__(self, "source", Path(self.source))
        object.__setattr__(self, "destination", Path(self.destination))
        object.__setattr__(self, "operation", Operation(self.operation))


@dataclass
class TransferConfig:
    """
    Configuration for guarded transfers.

    Attributes
    ----------
    buffer_size : int, default=BUFFER_SIZE
        Chunk size used when streaming file contents
    blocking : bool, default=True
        Wait for contended locks instead of failing immediately
    strict_move : bool, default=False
        Fail a MOVE step when its source cannot be removed after copying
    verbose : bool, default=False
        Enable debug logging
    """

    buffer_size: int = BUFFER_SIZE
    blocking: bool = True
    strict_move: bool = False
    verbose: bool = False

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.buffer_size <= 0:
            raise ValueError(f"Buffer size must be positive, got {self.buffer_size}")

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "TransferConfig":
        """Create config from command-line arguments."""
        return cls(
            buffer_size=args.buffer_size,
            blocking=not args.non_blocking,
            strict_move=args.strict_move,
            verbose=args.verbose,
        )


@dataclass
class TransferResult:
    """
    Outcome of a guarded run.

    Attributes
    ----------
    steps : int
        Number of steps in the plan
    bytes_transferred : int, default=0
        Sum of the bytes copied by every step
    unlocked : bool, default=False
        Whether every source lock was released cleanly
    duration : float, default=0.0
        Total run time in seconds
    """

    steps: int
    bytes_transferred: int = 0
    unlocked: bool = False
    duration: float = 0.0

    @property
    def success(self) -> bool:
        """
        Check if the run finished with all locks released.

        Returns
        -------
        bool
            True if the unlock phase succeeded, False otherwise
        """
        return self.unlocked

    @property
    def speed_mb_sec(self) -> float:
        """
        Calculate transfer speed in MB/s.

        Returns
        -------
        float
            Transfer speed in megabytes per second
        """
        if self.duration > 0:
            return (self.bytes_transferred / (1024 * 1024)) / self.duration
        return 0.0


# ============================================================================
# Errors
# ============================================================================


class TransferError(OSError):
    """
    Base class for failures of a guarded transfer.

    Parameters
    ----------
    message : str
        Human readable description
    path : Path | None, default=None
        Source path of the failing step, if any
    step_index : int | None, default=None
        Position of the failing step in the plan, if any
    bytes_transferred : int, default=0
        Bytes copied by the steps completed before the failure
    """

    def __init__(
        self,
        message: str,
        *,
        path: Path | None = None,
        step_index: int | None = None,
        bytes_transferred: int = 0,
    ):
        super().__init__(message)
        self.path = path
        self.step_index = step_index
        self.bytes_transferred = bytes_transferred

    def __reduce__(self):
        # Keyword-only attributes travel in the instance dict
        return (self.__class__, (self.args[0],), self.__dict__)


class SourceNotFoundError(TransferError, FileNotFoundError):
    """Raised when one or more sources are missing at validation time."""

    def __init__(self, missing: list[Path]):
        names = ", ".join(str(path) for path in missing)
        super().__init__(f"Files not found: {names}")
        self.missing = missing

    def __reduce__(self):
        return (self.__class__, (self.missing,), self.__dict__)


class LockOpenError(TransferError):
    """Raised when a source cannot be opened for locking."""


class LockNotAcquiredError(TransferError):
    """Raised when an exclusive lock could not be taken on every source."""


class CopyError(TransferError):
    """Raised when copying a step's source to its destination fails."""


class CleanupError(TransferError):
    """Raised by a strict MOVE step whose source could not be removed."""


# ============================================================================
# Filesystem primitives
# ============================================================================


def _exists(path: Path) -> bool:
    # os.path.exists reports any OSError as a missing path
    return os.path.exists(path)


def _same_file(first: Path, second: Path) -> bool:
    try:
        return os.path.samefile(first, second)
    except OSError:
        return False


def _lock_key(path: Path) -> Path:
    return Path(os.path.realpath(path))


def _file_identity(handle: BinaryIO) -> tuple[int, int]:
    stat = os.fstat(handle.fileno())
    return stat.st_dev, stat.st_ino


def copy_file(source: Path, destination: Path, buffer_size: int = BUFFER_SIZE) -> int:
    """
    Copy a single file, replacing the destination atomically.

    Data is streamed into a uniquely named hidden temp file next to the
    destination (``.<name>.XXXX.tmp``) which is renamed over the destination
    once complete, so a failed copy never leaves a truncated destination
    behind and no other file in the directory is touched.

    Parameters
    ----------
    source : Path
        File to read
    destination : Path
        File to create or overwrite; parent directories are created
    buffer_size : int, default=BUFFER_SIZE
        Chunk size for reading and writing

    Returns
    -------
    int
        Number of bytes copied

    Raises
    ------
    OSError
        If the source cannot be read or the destination cannot be written
    """
    destination.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(
        dir=destination.parent, prefix=f".{destination.name}.", suffix=".tmp"
    )
    temp_path = Path(temp_name)
    bytes_copied = 0

    try:
        with os.fdopen(fd, "wb") as f_dest, open(source, "rb") as f_source:
            while chunk := f_source.read(buffer_size):
                f_dest.write(chunk)
                bytes_copied += len(chunk)
        shutil.copymode(source, temp_path)
        temp_path.replace(destination)
    except BaseException:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise

    return bytes_copied


# ============================================================================
# Locker
# ============================================================================


class Locker:
    """
    Holds exclusive advisory locks on the sources of a transfer.

    Locks are taken with ``flock`` on a read handle that stays open until the
    lock is released; flock locks belong to the open file description, so the
    handles are kept for the whole guarded run rather than reopened. One
    handle is held per file (device and inode), however many paths lead to it.

    Parameters
    ----------
    blocking : bool, default=True
        Wait for contended locks; when False a contended lock fails at once
    """

    def __init__(self, blocking: bool = True):
        self.blocking = blocking
        # file identity -> (first path locked, handle)
        self._handles: dict[tuple[int, int], tuple[Path, BinaryIO]] = {}
        # resolved path -> file identity
        self._identities: dict[Path, tuple[int, int]] = {}

    def __enter__(self) -> "Locker":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    @property
    def held(self) -> list[Path]:
        """Paths currently locked, in acquisition order."""
        return [path for path, _ in self._handles.values()]

    def lock_all(self, steps: Iterable[TransferStep]) -> bool:
        """
        Lock every step's source, in order.

        A source whose file is already locked by an earlier step, through the
        same path or another link, counts as acquired.

        Parameters
        ----------
        steps : Iterable[TransferStep]
            Steps whose sources should be locked

        Returns
        -------
        bool
            True if every lock was acquired; False at the first lock that
            could not be taken

        Raises
        ------
        LockOpenError
            If a source cannot be opened
        """
        flags = fcntl.LOCK_EX if self.blocking else fcntl.LOCK_EX | fcntl.LOCK_NB

        for step in steps:
            key = _lock_key(step.source)
            if key in self._identities:
                logging.debug(f"already locked: {step.source}")
                continue

            try:
                handle = open(step.source, "rb")
            except OSError as e:
                raise LockOpenError(
                    f"Cannot open {step.source} for locking: {e}", path=step.source
                ) from e

            try:
                identity = _file_identity(handle)
            except OSError as e:
                handle.close()
                raise LockOpenError(
                    f"Cannot stat {step.source} for locking: {e}", path=step.source
                ) from e

            if identity in self._handles:
                # Another link to a file we already hold
                handle.close()
                self._identities[key] = identity
                logging.debug(f"already locked through another link: {step.source}")
                continue

            try:
                fcntl.flock(handle.fileno(), flags)
            except OSError as e:
                handle.close()
                logging.warning(f"Could not lock {step.source}: {e}")
                return False

            self._handles[identity] = (key, handle)
            self._identities[key] = identity
            logging.debug(f"locked {step.source}")

        return True

    def unlock_all(self, steps: Iterable[TransferStep]) -> bool:
        """
        Release the lock on every step's source, in order.

        A source that no longer exists (moved away during the run) or that
        holds no lock is treated as successfully unlocked.

        Parameters
        ----------
        steps : Iterable[TransferStep]
            Steps whose sources should be unlocked

        Returns
        -------
        bool
            True unless releasing the lock on an existing source failed
        """
        unlocked = True

        for step in steps:
            identity = self._identities.pop(_lock_key(step.source), None)
            if identity is None:
                continue
            entry = self._handles.pop(identity, None)
            if entry is None:
                # Another link to this file was unlocked earlier
                continue

            _, handle = entry
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
                logging.debug(f"unlocked {step.source}")
            except OSError as e:
                if _exists(step.source):
                    logging.error(f"Failed to unlock {step.source}: {e}")
                    unlocked = False
            finally:
                handle.close()

        return unlocked

    def release(self) -> None:
        """Close every remaining handle, dropping its lock."""
        self._identities.clear()
        while self._handles:
            _, (_, handle) = self._handles.popitem()
            with contextlib.suppress(OSError):
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
            handle.close()


# ============================================================================
# Transfer Plan
# ============================================================================


class TransferRunner(ABC):
    """Something that can be validated and then executed as a transfer."""

    @abstractmethod
    def validate(self) -> bool:
        """Return True if the transfer can run."""

    @abstractmethod
    def run(self) -> int:
        """Execute the transfer and return the number of bytes transferred."""


@dataclass(frozen=True)
class TransferPlan(TransferRunner):
    """
    Ordered, immutable sequence of transfer steps.

    Steps run in the order given. Several steps may share a source or a
    destination. An empty plan is valid and transfers nothing.

    Attributes
    ----------
    steps : tuple[TransferStep, ...]
        Steps to execute, in order
    config : TransferConfig
        Buffer size and MOVE cleanup policy (not part of plan equality)
    """

    steps: tuple[TransferStep, ...] = ()
    config: TransferConfig = field(default_factory=TransferConfig, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "steps", tuple(self.steps))

    def __len__(self) -> int:
        return len(self.steps)

    def __iter__(self) -> Iterator[TransferStep]:
        return iter(self.steps)

    def missing_sources(self) -> list[Path]:
        """
        List the sources that do not exist right now.

        Returns
        -------
        list[Path]
            Missing source paths, in plan order
        """
        return [step.source for step in self.steps if not _exists(step.source)]

    def validate(self) -> bool:
        """
        Check that every step's source exists.

        All steps are checked so every missing source gets logged. I/O errors
        during the check count as a missing source.

        Returns
        -------
        bool
            True if all sources exist, False otherwise
        """
        missing = self.missing_sources()
        for path in missing:
            logging.warning(f"Source not found: {path}")
        return not missing

    def run(self) -> int:
        """
        Execute every step in order.

        Sources are validated again first; nothing is written if any is
        missing. A failing copy stops the run without touching the remaining
        steps and without rolling back completed ones.

        Returns
        -------
        int
            Total bytes copied across all steps

        Raises
        ------
        SourceNotFoundError
            If a source is missing
        CopyError
            If a copy fails
        CleanupError
            If ``strict_move`` is set and a moved source cannot be removed
        """
        missing = self.missing_sources()
        if missing:
            raise SourceNotFoundError(missing)

        total = 0
        for index, step in enumerate(self.steps):
            total += self._execute_step(index, step, total)
        return total

    def _execute_step(self, index: int, step: TransferStep, transferred: int) -> int:
        logging.info(f"{step.operation.value} {step.source} -> {step.destination}")

        try:
            bytes_copied = copy_file(
                step.source, step.destination, self.config.buffer_size
            )
        except OSError as e:
            raise CopyError(
                f"Failed to copy {step.source} to {step.destination}: {e}",
                path=step.source,
                step_index=index,
                bytes_transferred=transferred,
            ) from e

        logging.debug(f"copied {bytes_copied:,} bytes to {step.destination}")

        if step.operation is Operation.MOVE:
            self._remove_source(index, step, transferred + bytes_copied)

        return bytes_copied

    def _remove_source(self, index: int, step: TransferStep, transferred: int) -> None:
        """Remove a moved source; best effort unless ``strict_move`` is set."""
        if _same_file(step.source, step.destination):
            logging.warning(f"Source and destination are the same file: {step.source}")
            return

        try:
            os.remove(step.source)
        except OSError as e:
            if self.config.strict_move:
                raise CleanupError(
                    f"Copied {step.source} but could not remove it: {e}",
                    path=step.source,
                    step_index=index,
                    bytes_transferred=transferred,
                ) from e
            logging.warning(f"Copied {step.source} but could not remove it: {e}")


# ============================================================================
# Orchestrator
# ============================================================================


def with_lock(plan: TransferPlan, locker: Locker | None = None) -> TransferResult:
    """
    Run a plan while holding exclusive locks on all of its sources.

    The sequence is validate -> lock all -> run -> unlock all. Locks are
    released on every exit path, including when locking or a step fails.

    Parameters
    ----------
    plan : TransferPlan
        Plan to execute
    locker : Locker | None, default=None
        Locker to use; a new one honouring ``plan.config.blocking`` if None

    Returns
    -------
    TransferResult
        Bytes transferred and whether every lock was released

    Raises
    ------
    SourceNotFoundError
        If a source is missing before locking
    LockOpenError
        If a source cannot be opened for locking
    LockNotAcquiredError
        If a lock cannot be acquired
    CopyError
        If a copy fails
    CleanupError
        If a strict MOVE cannot remove its source
    """
    start_time = time.time()

    if not plan.validate():
        raise SourceNotFoundError(plan.missing_sources())

    if locker is None:
        locker = Locker(blocking=plan.config.blocking)

    result = TransferResult(steps=len(plan))

    with locker:
        try:
            if not locker.lock_all(plan.steps):
                raise LockNotAcquiredError(
                    "Could not acquire an exclusive lock on every source"
                )
            result.bytes_transferred = plan.run()
        finally:
            result.unlocked = locker.unlock_all(plan.steps)
            result.duration = time.time() - start_time

    return result


# ============================================================================
# CLI Layer (Presentation)
# ============================================================================


class _AppendStep(argparse.Action):
    """Append a TransferStep, keeping --copy and --move in command-line order."""

    def __call__(self, parser, namespace, values, option_string=None):
        steps = list(getattr(namespace, self.dest, None) or [])
        source, destination = values
        steps.append(TransferStep(source, destination, self.const))
        setattr(namespace, self.dest, steps)


def setup_logging(verbose: bool = False) -> None:
    """
    Configure logging for the application.

    Parameters
    ----------
    verbose : bool
        Enable verbose logging
    """
    log_level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=log_level,
        format="%(levelname)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def parse_arguments() -> argparse.Namespace:
    """
    Parse command line arguments.

    Returns
    -------
    argparse.Namespace
        Parsed command line arguments; ``steps`` holds the TransferSteps in
        the order they were given
    """
    parser = argparse.ArgumentParser(
        description="Copy or move files while holding exclusive locks on the sources",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s -c a.txt backup/a.txt                  # Copy one file
  %(prog)s -m m.dat archive/m.dat -c b.txt out.txt # Move then copy, in that order
  %(prog)s --non-blocking -c shared.db shared.bak # Fail if another process holds the lock
        """,
    )

    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable verbose output"
    )

    parser.add_argument(
        "-c",
        "--copy",
        dest="steps",
        nargs=2,
        metavar=("SOURCE", "DEST"),
        action=_AppendStep,
        const=Operation.COPY,
        help="Copy SOURCE to DEST (repeatable)",
    )

    parser.add_argument(
        "-m",
        "--move",
        dest="steps",
        nargs=2,
        metavar=("SOURCE", "DEST"),
        action=_AppendStep,
        const=Operation.MOVE,
        help="Move SOURCE to DEST (repeatable)",
    )

    parser.add_argument(
        "-b",
        "--buffer-size",
        type=int,
        default=BUFFER_SIZE,
        help="Buffer size in bytes (default: 8MB)",
    )

    parser.add_argument(
        "--non-blocking",
        action="store_true",
        help="Fail instead of waiting when a source is locked by another process",
    )

    parser.add_argument(
        "--strict-move",
        action="store_true",
        help="Fail a move whose source cannot be removed after copying",
    )

    return parser.parse_args()


# ============================================================================
# Main Entry Point
# ============================================================================


def main() -> int:
    """
    CLI entry point.

    Returns
    -------
    int
        Exit code: 0 for success, 1 for failure, 130 for keyboard interrupt
    """
    args = parse_arguments()
    setup_logging(args.verbose)

    try:
        config = TransferConfig.from_args(args)
        plan = TransferPlan(steps=args.steps or [], config=config)

        if not plan:
            logging.info("Nothing to transfer")

        result = with_lock(plan)

        if not result.success:
            logging.error("Transfer finished but some locks could not be released")
            return 1

        logging.info(
            f"Transferred {result.bytes_transferred:,} bytes in {result.steps} step(s) "
            f"({result.speed_mb_sec:.2f} MB/s)"
        )
        return 0

    except KeyboardInterrupt:
        logging.error("Operation interrupted by user")
        return 130
    except FileNotFoundError as e:
        logging.error(f"File not found: {e}")
        return 1
    except ValueError as e:
        logging.error(f"Invalid parameter: {e}")
        return 1
    except OSError as e:
        logging.error(f"I/O error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
