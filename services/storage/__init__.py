"""
Storage Service

- AssetRelocator: idempotent copy of provider output into permanent storage
- R2Storage: S3-compatible object storage backend
"""

from .relocator import AssetRelocator, ObjectStorage, R2Storage, derive_key

__all__ = ["AssetRelocator", "ObjectStorage", "R2Storage", "derive_key"]
