"""Blob storage adapters implementing BlobStoragePort."""

from proclog.adapters.blob.local_blob_store import LocalBlobStore

__all__ = ["LocalBlobStore"]
