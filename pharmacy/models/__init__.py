"""Models package - exports all SQLAlchemy models."""
from pharmacy.models.storage_entry import StorageEntry

__all__ = ['StorageEntry']
