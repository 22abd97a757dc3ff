"""
File-level dedupe keys.

A file hash is the SHA256 of the exact uploaded bytes. Two uploads of the
same file by the same user resolve to the same hash; the state store allows
each (user, hash) pair to be claimed by one batch item only.
"""

import hashlib

# Length of the hash prefix used in log lines
HASH_PREFIX_LENGTH = 12


def compute_file_hash(file_bytes: bytes) -> str:
    """
    Compute SHA256 hash of file bytes.

    Args:
        file_bytes: Raw file content

    Returns:
        64-character lowercase hex string
    """
    return hashlib.sha256(file_bytes).hexdigest()


def short_hash(file_hash: str) -> str:
    """Shortened hash for logs and activity messages."""
    return file_hash[:HASH_PREFIX_LENGTH]
