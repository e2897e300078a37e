"""Utility exports for filesystem, hashing, and concurrency helpers."""

from keycloak_migrator.utils.concurrency import (
    BoundedSemaphore,
    CancellationToken,
    WorkerPool,
    run_with_timeout,
)
from keycloak_migrator.utils.fs import atomic_write, atomic_write_json, delete_within, is_within
from keycloak_migrator.utils.hashing import sha256_bytes, sha256_file, sha256_json, sha256_text

__all__ = [
    "BoundedSemaphore",
    "CancellationToken",
    "WorkerPool",
    "atomic_write",
    "atomic_write_json",
    "delete_within",
    "is_within",
    "run_with_timeout",
    "sha256_bytes",
    "sha256_file",
    "sha256_json",
    "sha256_text",
]
