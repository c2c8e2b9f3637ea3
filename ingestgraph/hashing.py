"""Deterministic hashing helpers shared by identity and bookkeeping ids."""

import hashlib


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def deterministic_uuid(value: str) -> str:
    """Format the first 32 hex chars of sha256(value) as an uppercase UUID.

    Same input gives the same id in any process.
    """
    digest = sha256_hex(value)[:32]
    return (
        f"{digest[0:8]}-{digest[8:12]}-{digest[12:16]}-{digest[16:20]}-{digest[20:32]}"
    ).upper()


def short_hash(value: str, length: int = 8) -> str:
    """Truncated sha256 hex digest."""
    return sha256_hex(value)[:length]
