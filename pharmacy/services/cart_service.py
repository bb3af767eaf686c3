"""
Cart service: guest cart in browser storage, server cart once logged in.

Reconciliation policy when a guest logs in:
- Local lines are pushed to the server cart one at a time, in order.
- A product already on the server gets its quantity summed; anything else
  is added as a new line, so the server keeps one line per product.
- A line that fails to sync stays in browser storage for the next login;
  the guest cart key is removed only when every line made it.
- If the server cart cannot be read at all, nothing is touched.
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from flask import g

from pharmacy.exceptions import AuthError, StorefrontError, ValidationError
from pharmacy.services.auth_service import CLIENT_AREA, get_backend_client
from pharmacy.services.backend_client import BackendClient, unwrap_list
from pharmacy.services.browser_storage import BrowserStorage, GUEST_CART_KEY
from pharmacy.services.events import cart_local_fallback, cart_merged

logger = logging.getLogger(__name__)

LOCAL_ID_PREFIX = 'local_'


class CartApi:
    """Backend cart endpoints."""

    def __init__(self, client: BackendClient):
        self.client = client

    def get_cart(self) -> List[Dict[str, Any]]:
        return unwrap_list(self.client.get('/cart'), 'items', 'cart_items')

    def add_item(self, product_id: Any, quantity: int) -> Dict[str, Any]:
        data = self.client.post('/cart/items', json={'product_id': product_id, 'quantity': quantity})
        return _unwrap_item(data)

    def update_item(self, item_id: Any, quantity: int) -> Dict[str, Any]:
        data = self.client.put(f'/cart/items/{item_id}', json={'quantity': quantity})
        return _unwrap_item(data)

    def remove_item(self, item_id: Any) -> None:
        self.client.delete(f'/cart/items/{item_id}')

    def clear(self) -> None:
        self.client.delete('/cart')


def _unwrap_item(data: Any) -> Dict[str, Any]:
    if isinstance(data, dict) and isinstance(data.get('data'), dict):
        return data['data']
    return data if isinstance(data, dict) else {}


def _same_id(a: Any, b: Any) -> bool:
    return a is not None and b is not None and str(a) == str(b)


def item_product_id(item: Dict[str, Any]) -> Any:
    """Product id of a cart line, direct or from the nested product snapshot."""
    product_id = item.get('product_id', item.get('productId'))
    if product_id is None and isinstance(item.get('product'), dict):
        product_id = item['product'].get('id')
    return product_id


def matches_product(item: Dict[str, Any], product_id: Any) -> bool:
    if _same_id(item.get('product_id', item.get('productId')), product_id):
        return True
    product = item.get('product')
    return isinstance(product, dict) and _same_id(product.get('id'), product_id)


def find_product_line(items: List[Dict[str, Any]], product_id: Any) -> Optional[Dict[str, Any]]:
    for item in items:
        if matches_product(item, product_id):
            return item
    return None


def item_quantity(item: Dict[str, Any]) -> int:
    try:
        quantity = int(item.get('quantity') or 1)
    except (TypeError, ValueError):
        quantity = 1
    return max(quantity, 1)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_local_id(existing: List[Dict[str, Any]]) -> str:
    """Timestamp-based client id, unique within the given lines."""
    taken = {str(item.get('id')) for item in existing}
    stamp = int(time.time() * 1000)
    candidate = f"{LOCAL_ID_PREFIX}{stamp}"
    while candidate in taken:
        stamp += 1
        candidate = f"{LOCAL_ID_PREFIX}{stamp}"
    return candidate


def make_local_item(product: Dict[str, Any], quantity: int, existing: List[Dict[str, Any]],
                    price: Any = None) -> Dict[str, Any]:
    now = _now_iso()
    return {
        'id': new_local_id(existing),
        'product_id': product.get('id'),
        'product': product,
        'quantity': quantity,
        'price': price if price is not None else product.get('price'),
        'created_at': now,
        'updated_at': now,
    }


def apply_add(items: List[Dict[str, Any]], product: Dict[str, Any], quantity: int) -> List[Dict[str, Any]]:
    """Add quantity of a product: bump the existing line or append a new one."""
    existing = find_product_line(items, product.get('id'))
    if existing is None:
        return items + [make_local_item(product, quantity, items)]
    return [
        {**item, 'quantity': item_quantity(item) + quantity, 'updated_at': _now_iso()}
        if item is existing else item
        for item in items
    ]


def apply_update(items: List[Dict[str, Any]], item_id: Any, quantity: int) -> List[Dict[str, Any]]:
    return [
        {**item, 'quantity': quantity, 'updated_at': _now_iso()} if _same_id(item.get('id'), item_id) else item
        for item in items
    ]


def apply_remove(items: List[Dict[str, Any]], item_id: Any) -> List[Dict[str, Any]]:
    return [item for item in items if not _same_id(item.get('id'), item_id)]


def cart_summary(items: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Line count, unit count and subtotal of a cart."""
    subtotal = Decimal('0')
    for item in items:
        price = item.get('price')
        if price is None and isinstance(item.get('product'), dict):
            price = item['product'].get('price')
        try:
            subtotal += Decimal(str(price or 0)) * item_quantity(item)
        except InvalidOperation:
            continue
    return {
        'lines': len(items),
        'units': sum(item_quantity(item) for item in items),
        'subtotal': str(subtotal),
    }


@dataclass
class MergeReport:
    """Outcome of merging the guest cart into the server cart."""
    updated: List[Any] = field(default_factory=list)
    added: List[Any] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)
    aborted: bool = False
    error: Optional[str] = None

    @property
    def synced_count(self) -> int:
        return len(self.updated) + len(self.added)

    @property
    def message(self) -> Optional[str]:
        if self.aborted:
            return 'Your saved cart could not be synced right now. It is kept on this device.'
        if self.failed and self.synced_count:
            return f'Cart merged. {len(self.failed)} item(s) could not be synced and were kept on this device.'
        if self.failed:
            return 'Your saved cart could not be synced right now. It is kept on this device.'
        if self.synced_count:
            return 'Your cart was merged with your account.'
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'updated': self.updated,
            'added': self.added,
            'failed': self.failed,
            'aborted': self.aborted,
            'message': self.message,
        }


class CartService:
    """
    Active cart for one request.

    Unauthenticated: every operation reads and writes the guest cart in
    browser storage. Authenticated: the server cart is used first and the
    guest cart only as a logged fallback when the backend call fails.
    """

    def __init__(self, api: CartApi, storage: BrowserStorage, authenticated: bool):
        self.api = api
        self.storage = storage
        self.authenticated = authenticated
        self.items: List[Dict[str, Any]] = []
        self.degraded = False
        self._active = True

    def close(self) -> None:
        """Stop adopting results; called at request teardown."""
        self._active = False

    def _adopt(self, items: List[Dict[str, Any]]) -> None:
        if self._active:
            self.items = list(items)

    # Guest cart -----------------------------------------------------------

    def local_items(self) -> List[Dict[str, Any]]:
        return [item for item in self.storage.get_list(GUEST_CART_KEY) if isinstance(item, dict)]

    def _save_local(self, items: List[Dict[str, Any]]) -> None:
        if items:
            self.storage.set_json(GUEST_CART_KEY, items)
        else:
            self.storage.remove(GUEST_CART_KEY)

    def _fallback(self, operation: str, error: StorefrontError, mutate) -> None:
        """Apply a mutation to the guest cart after a failed server call."""
        logger.warning(
            f"[CART] Server {operation} failed ({error.status_code}: {error.message}); "
            f"falling back to local cart"
        )
        self.degraded = True
        cart_local_fallback.send(self, operation=operation)
        self._save_local(mutate(self.local_items()))
        self._adopt(mutate(self.items))

    # Operations -----------------------------------------------------------

    def load(self) -> List[Dict[str, Any]]:
        """Load the active cart: server cart when authenticated, guest cart otherwise."""
        if not self.authenticated:
            self._adopt(self.local_items())
            return self.items
        try:
            self._adopt(self.api.get_cart())
        except AuthError:
            raise
        except StorefrontError as e:
            logger.warning(f"[CART] Could not load server cart ({e.message}); showing local cart")
            self.degraded = True
            self._adopt(self.local_items())
        return self.items

    def add_item(self, product: Dict[str, Any], quantity: int = 1) -> List[Dict[str, Any]]:
        if not isinstance(product, dict) or product.get('id') is None:
            raise ValidationError('Product is required.', field_errors={'product_id': ['Product is required.']})
        if quantity < 1:
            raise ValidationError('Quantity must be at least 1.', field_errors={'quantity': ['Quantity must be at least 1.']})

        def mutate(items):
            return apply_add(items, product, quantity)

        if not self.authenticated:
            self._save_local(mutate(self.local_items()))
            self._adopt(self.local_items())
            return self.items

        try:
            existing = find_product_line(self.items, product['id'])
            if existing is not None and existing.get('id') is not None:
                new_quantity = item_quantity(existing) + quantity
                self.api.update_item(existing['id'], new_quantity)
                self._adopt(apply_update(self.items, existing['id'], new_quantity))
            else:
                created = self.api.add_item(product['id'], quantity)
                line = {**created, 'product': product, 'product_id': product['id'], 'quantity': quantity}
                line.setdefault('price', product.get('price'))
                self._adopt(self.items + [line])
        except AuthError:
            raise
        except StorefrontError as e:
            self._fallback('add', e, mutate)
        return self.items

    def update_item(self, item_id: Any, quantity: int) -> List[Dict[str, Any]]:
        if quantity < 1:
            return self.remove_item(item_id)

        def mutate(items):
            return apply_update(items, item_id, quantity)

        if not self.authenticated:
            self._save_local(mutate(self.local_items()))
            self._adopt(self.local_items())
            return self.items

        try:
            self.api.update_item(item_id, quantity)
            self._adopt(mutate(self.items))
        except AuthError:
            raise
        except StorefrontError as e:
            self._fallback('update', e, mutate)
        return self.items

    def remove_item(self, item_id: Any) -> List[Dict[str, Any]]:
        def mutate(items):
            return apply_remove(items, item_id)

        if not self.authenticated:
            self._save_local(mutate(self.local_items()))
            self._adopt(self.local_items())
            return self.items

        try:
            self.api.remove_item(item_id)
            self._adopt(mutate(self.items))
        except AuthError:
            raise
        except StorefrontError as e:
            self._fallback('remove', e, mutate)
        return self.items

    def clear(self) -> None:
        if self.authenticated:
            try:
                self.api.clear()
            except AuthError:
                raise
            except StorefrontError as e:
                logger.warning(f"[CART] Could not clear server cart: {e.message}")
                self.degraded = True
        self.storage.remove(GUEST_CART_KEY)
        self._adopt([])

    def reconcile_on_login(self) -> MergeReport:
        """
        Merge the guest cart into the server cart after login.

        Lines are synced strictly one after another so two adds for the
        same product never race against the same server cart.
        """
        report = MergeReport()
        local = self.local_items()

        try:
            server_items = list(self.api.get_cart())
        except StorefrontError as e:
            logger.error(f"[CART] Reconciliation aborted, server cart unavailable: {e.message}")
            report.aborted = True
            report.error = e.message
            self._adopt(local)
            return report

        if not local:
            self._adopt(server_items)
            return report

        kept: List[Dict[str, Any]] = []
        for local_item in local:
            product_id = item_product_id(local_item)
            quantity = item_quantity(local_item)
            if product_id is None:
                logger.warning(f"[CART] Dropping guest cart line without product: {local_item.get('id')}")
                continue

            existing = find_product_line(
                [item for item in server_items if item.get('id') is not None],
                product_id
            )
            try:
                if existing is not None:
                    new_quantity = item_quantity(existing) + quantity
                    self.api.update_item(existing['id'], new_quantity)
                    server_items = apply_update(server_items, existing['id'], new_quantity)
                    report.updated.append(product_id)
                else:
                    created = self.api.add_item(product_id, quantity)
                    server_items.append({'product_id': product_id, 'quantity': quantity, **created})
                    report.added.append(product_id)
            except StorefrontError as e:
                logger.warning(f"[CART] Could not sync product {product_id} ({e.message}); keeping it locally")
                report.failed.append({'product_id': product_id, 'error': e.message})
                kept.append(local_item)

        self._save_local(kept)

        try:
            self._adopt(self.api.get_cart())
        except StorefrontError as e:
            logger.warning(f"[CART] Could not re-fetch merged cart ({e.message}); using merged view")
            self._adopt(server_items)

        logger.info(
            f"[CART] Reconciled guest cart: {len(report.updated)} updated, "
            f"{len(report.added)} added, {len(report.failed)} failed"
        )
        cart_merged.send(self, report=report)
        return report

    def persist_on_logout(self) -> List[Dict[str, Any]]:
        """
        Write the active cart back to browser storage, then clear it from the session.

        Guest lines for products the active cart does not hold are kept: they
        are lines that failed to sync at login or were written while the
        server cart was unreachable.
        """
        active_ids = {str(item_product_id(item)) for item in self.items}
        leftovers = [
            item for item in self.local_items()
            if item_product_id(item) is not None and str(item_product_id(item)) not in active_ids
        ]

        saved: List[Dict[str, Any]] = []
        for item in self.items:
            product = item.get('product') if isinstance(item.get('product'), dict) else {}
            product_id = item_product_id(item)
            if product_id is None:
                continue
            item_id = item.get('id')
            if item_id is None or not str(item_id).startswith(LOCAL_ID_PREFIX):
                item_id = new_local_id(saved + leftovers)
            now = _now_iso()
            saved.append({
                'id': item_id,
                'product_id': product_id,
                'product': product or {'id': product_id},
                'quantity': item_quantity(item),
                'price': item.get('price', product.get('price')),
                'created_at': item.get('created_at') or now,
                'updated_at': now,
            })

        if leftovers:
            logger.info(f"[CART] Keeping {len(leftovers)} unsynced guest line(s) on logout")
        saved.extend(leftovers)

        self._save_local(saved)
        self.items = []
        logger.info(f"[CART] Saved {len(saved)} line(s) to browser storage on logout")
        return saved


def get_cart_service(authenticated: Optional[bool] = None) -> CartService:
    """
    Cart service for the current request and browser.

    authenticated defaults to whether a customer is logged in; login passes
    True explicitly because g.client_user is loaded before the login happens.
    """
    if authenticated is None:
        authenticated = g.get('client_user') is not None
    service = CartService(CartApi(get_backend_client(CLIENT_AREA)), g.storage, authenticated)
    g.setdefault('_cart_services', []).append(service)
    return service
