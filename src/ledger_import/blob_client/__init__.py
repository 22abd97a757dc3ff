"""Blob store client for uploaded files."""

from .client import BlobClient

__all__ = ["BlobClient"]
