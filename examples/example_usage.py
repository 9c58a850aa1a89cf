#!/usr/bin/env python3
"""
Example usage script for lockxfer.

Builds a small batch of copy and move steps in a scratch directory and runs
it as a guarded transfer, then shows how a missing source is reported.
"""

import logging
import sys
import tempfile
from pathlib import Path

# Add src directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from lockxfer import (  # noqa: E402
    Operation,
    SourceNotFoundError,
    TransferPlan,
    TransferStep,
    with_lock,
)


def setup_logging() -> None:
    """Configure logging for the example script."""
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler()],
    )


def create_sample_file(file_path: Path, size_kb: int = 64) -> None:
    """
    Create a sample file for the demo.

    Parameters
    ----------
    file_path : Path
        Path where to create the sample file
    size_kb : int
        Size of the file in kilobytes
    """
    file_path.parent.mkdir(parents=True, exist_ok=True)
    file_path.write_bytes(b"\x00" * 1024 * size_kb)
    logging.info(f"Created sample file: {file_path} ({size_kb}KB)")


def example_batch(work_dir: Path) -> None:
    """Copy one file and move another under a single set of locks."""
    logging.info("=" * 60)
    logging.info("EXAMPLE 1: Copy and move in one guarded run")
    logging.info("=" * 60)

    clip = work_dir / "card" / "clip001.mov"
    sidecar = work_dir / "card" / "clip001.xml"
    create_sample_file(clip, 256)
    create_sample_file(sidecar, 4)

    plan = TransferPlan(
        [
            TransferStep(clip, work_dir / "backup" / clip.name, Operation.COPY),
            TransferStep(sidecar, work_dir / "archive" / sidecar.name, Operation.MOVE),
        ]
    )
    result = with_lock(plan)

    logging.info(
        f"success={result.success} bytes={result.bytes_transferred:,} "
        f"duration={result.duration:.3f}s"
    )
    logging.info(f"clip still on card: {clip.exists()}")
    logging.info(f"sidecar still on card: {sidecar.exists()}")


def example_missing_source(work_dir: Path) -> None:
    """Show that a missing source stops the batch before any copy."""
    logging.info("=" * 60)
    logging.info("EXAMPLE 2: Missing source")
    logging.info("=" * 60)

    present = work_dir / "present.txt"
    present.write_text("present")

    plan = TransferPlan(
        [
            TransferStep(present, work_dir / "out" / "present.txt", Operation.COPY),
            TransferStep(work_dir / "absent.txt", work_dir / "out" / "absent.txt", Operation.COPY),
        ]
    )

    try:
        with_lock(plan)
    except SourceNotFoundError as e:
        logging.info(f"Refused to start: {e}")

    logging.info(f"anything copied: {(work_dir / 'out').exists()}")


def main() -> int:
    """Run all examples in a scratch directory."""
    setup_logging()

    with tempfile.TemporaryDirectory() as temp_dir:
        work_dir = Path(temp_dir)
        example_batch(work_dir)
        example_missing_source(work_dir)

    return 0


if __name__ == "__main__":
    sys.exit(main())
