"""
Browser storage for the storefront.

The storefront keeps per-browser state (guest cart, cached shipping address)
the way a single-page app keeps it in localStorage: JSON values under fixed
keys, scoped to one browser profile. Services receive a storage object
instead of reaching for a global, so they can be tested with MemoryStorage.

Keys:
- local_cart: guest cart (list of cart items)
- last_shipping_address_<user_id>: per-user shipping address cache
- last_shipping_address: legacy unscoped address key (migrated, then removed)
"""
import json
import logging
from typing import Any, Dict, Iterable, Optional

from sqlalchemy.exc import IntegrityError

from pharmacy.models import StorageEntry

logger = logging.getLogger(__name__)

GUEST_CART_KEY = 'local_cart'
SHIPPING_ADDRESS_BASE = 'last_shipping_address'
# Generic address keys that could leak between accounts on a shared browser
LEGACY_UNSCOPED_KEYS = (
    'address',
    'shipping_address',
    SHIPPING_ADDRESS_BASE,
    'checkout_shipping_address',
    'customer_shipping_address',
)


def scoped_key(base: str, user_id: Any) -> str:
    """Build a per-user key so cached data never leaks across accounts."""
    if user_id in (None, ''):
        raise ValueError("user_id is required for a scoped key")
    return f"{base}_{user_id}"


class BrowserStorage:
    """Key/value JSON storage for one browser profile."""

    def get_raw(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set_raw(self, key: str, value: str) -> None:
        raise NotImplementedError

    def remove(self, key: str) -> None:
        raise NotImplementedError

    def get_json(self, key: str, default: Any = None) -> Any:
        """Return the decoded value, or default when missing or corrupt."""
        raw = self.get_raw(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning(f"[STORAGE] Discarding corrupt value under '{key}'")
            return default

    def set_json(self, key: str, value: Any) -> None:
        self.set_raw(key, json.dumps(value, default=str))

    def get_list(self, key: str) -> list:
        value = self.get_json(key, [])
        return value if isinstance(value, list) else []


class MemoryStorage(BrowserStorage):
    """In-process storage, used by tests and as a fallback without a browser id."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, str] = {}
        for key, value in (initial or {}).items():
            self.set_json(key, value)

    def get_raw(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set_raw(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> Iterable[str]:
        return list(self._data.keys())


class DatabaseStorage(BrowserStorage):
    """Storage rows keyed by (browser_id, key) in the storefront database."""

    def __init__(self, db_session, browser_id: str):
        self.db_session = db_session
        self.browser_id = browser_id

    def _entry(self, key: str) -> Optional[StorageEntry]:
        return self.db_session.query(StorageEntry).filter_by(
            browser_id=self.browser_id,
            key=key
        ).first()

    def get_raw(self, key: str) -> Optional[str]:
        entry = self._entry(key)
        return entry.value if entry else None

    def set_raw(self, key: str, value: str) -> None:
        entry = self._entry(key)
        if entry:
            entry.value = value
        else:
            self.db_session.add(StorageEntry(browser_id=self.browser_id, key=key, value=value))
        try:
            self.db_session.commit()
        except IntegrityError:
            # Another request created the key first; overwrite it
            self.db_session.rollback()
            entry = self._entry(key)
            entry.value = value
            self.db_session.commit()

    def remove(self, key: str) -> None:
        self.db_session.query(StorageEntry).filter_by(
            browser_id=self.browser_id,
            key=key
        ).delete()
        self.db_session.commit()

    def keys(self) -> Iterable[str]:
        rows = self.db_session.query(StorageEntry.key).filter_by(browser_id=self.browser_id).all()
        return [row[0] for row in rows]


def load_shipping_address(storage: BrowserStorage, user_id: Any) -> Optional[dict]:
    """
    Read the user's cached shipping address.

    A value found only under the legacy unscoped key is moved into the
    user's scoped key, and the legacy key is removed.
    """
    key = scoped_key(SHIPPING_ADDRESS_BASE, user_id)
    address = storage.get_json(key)
    if address is not None:
        return address

    legacy = storage.get_json(SHIPPING_ADDRESS_BASE)
    if legacy is not None:
        logger.info(f"[STORAGE] Migrating legacy shipping address to '{key}'")
        storage.set_json(key, legacy)
        storage.remove(SHIPPING_ADDRESS_BASE)
    return legacy


def save_shipping_address(storage: BrowserStorage, user_id: Any, address: dict) -> None:
    storage.set_json(scoped_key(SHIPPING_ADDRESS_BASE, user_id), address)
    storage.remove(SHIPPING_ADDRESS_BASE)


def purge_legacy_keys(storage: BrowserStorage) -> int:
    """Remove unscoped legacy keys. Returns how many were present."""
    removed = 0
    for key in LEGACY_UNSCOPED_KEYS:
        if storage.get_raw(key) is not None:
            storage.remove(key)
            removed += 1
    return removed
