"""
lockxfer: Guarded bulk file transfer.

Copies or moves a batch of files while holding exclusive advisory locks on
every source, releasing the locks once the batch is done or has failed.
"""

from .main import (
    CleanupError,
    CopyError,
    LockNotAcquiredError,
    LockOpenError,
    Locker,
    Operation,
    SourceNotFoundError,
    TransferConfig,
    TransferError,
    TransferPlan,
    TransferResult,
    TransferRunner,
    TransferStep,
    copy_file,
    main,
    with_lock,
)

__version__ = "1.0.0"
__author__ = "lockxfer project"
__description__ = "Guarded bulk file transfer with exclusive advisory locks"

__all__ = [
    "CleanupError",
    "CopyError",
    "LockNotAcquiredError",
    "LockOpenError",
    "Locker",
    "Operation",
    "SourceNotFoundError",
    "TransferConfig",
    "TransferError",
    "TransferPlan",
    "TransferResult",
    "TransferRunner",
    "TransferStep",
    "copy_file",
    "main",
    "with_lock",
]
