"""Browser storage entry model."""
from sqlalchemy import Column, BigInteger, Integer, String, Text, DateTime, UniqueConstraint
from sqlalchemy.sql import func
from pharmacy.database import Base


class StorageEntry(Base):
    """
    One key of a browser profile's storage, persisted server-side.

    Rows are scoped by browser_id (a long-lived cookie). Writes to the same
    key replace the previous value; the last writer wins.
    """

    __tablename__ = 'storage_entry'

    id = Column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True, autoincrement=True)
    browser_id = Column(String(64), nullable=False, index=True)
    key = Column(String(255), nullable=False)
    value = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint('browser_id', 'key', name='storage_entry_browser_key_uq'),
    )

    def __repr__(self):
        return f"<StorageEntry(browser_id='{self.browser_id}', key='{self.key}')>"
