"""
Unit tests for the cart service: guest cart, server cart, login merge and logout.
"""

import pytest

from pharmacy.exceptions import AuthError, NetworkError, ServerError, ValidationError
from pharmacy.services.browser_storage import GUEST_CART_KEY, MemoryStorage
from pharmacy.services.cart_service import (
    CartService, apply_add, cart_summary, find_product_line, item_product_id, new_local_id
)
from pharmacy.services.events import cart_local_fallback, cart_merged
from tests.fakes import FakeCartApi


def local_line(product_id, quantity, line_id=None):
    return {
        'id': line_id or f'local_{1700000000000 + int(product_id)}',
        'product_id': product_id,
        'product': {'id': product_id, 'name': f'Product {product_id}', 'price': '10.00'},
        'quantity': quantity,
        'price': '10.00',
    }


def server_quantity(api, product_id):
    line = find_product_line(api.items, product_id)
    return line['quantity'] if line else None


class TestCartHelpers:

    def test_product_id_from_nested_product(self):
        assert item_product_id({'product': {'id': 7}}) == 7
        assert item_product_id({'product_id': 3, 'product': {'id': 7}}) == 3

    def test_local_ids_are_unique(self):
        first = new_local_id([])
        assert first.startswith('local_')
        assert new_local_id([{'id': first}]) != first

    def test_add_bumps_existing_line(self):
        items = apply_add([], {'id': 5, 'price': '2.50'}, 1)
        items = apply_add(items, {'id': 5, 'price': '2.50'}, 2)
        assert len(items) == 1
        assert items[0]['quantity'] == 3

    def test_summary(self):
        summary = cart_summary([local_line(1, 2), local_line(2, 1)])
        assert summary == {'lines': 2, 'units': 3, 'subtotal': '30.00'}


class TestGuestCart:

    def test_add_writes_browser_storage(self, storage, cart_api):
        cart = CartService(cart_api, storage, authenticated=False)

        cart.add_item({'id': 9, 'name': 'Vitamin C', 'price': '4.00'}, 2)
        cart.add_item({'id': 9, 'name': 'Vitamin C', 'price': '4.00'}, 1)

        saved = storage.get_json(GUEST_CART_KEY)
        assert len(saved) == 1
        assert saved[0]['quantity'] == 3
        assert saved[0]['id'].startswith('local_')
        assert cart_api.calls == []

    def test_update_to_zero_removes_line(self, cart_api):
        storage = MemoryStorage({GUEST_CART_KEY: [local_line(1, 2, 'local_1')]})
        cart = CartService(cart_api, storage, authenticated=False)

        cart.update_item('local_1', 0)

        assert storage.get_raw(GUEST_CART_KEY) is None
        assert cart.items == []

    def test_invalid_quantity(self, storage, cart_api):
        cart = CartService(cart_api, storage, authenticated=False)
        with pytest.raises(ValidationError):
            cart.add_item({'id': 1}, 0)


class TestServerCart:

    def test_add_existing_product_updates_line(self, storage):
        api = FakeCartApi([{'id': 1, 'product_id': 5, 'quantity': 2}])
        cart = CartService(api, storage, authenticated=True)
        cart.load()

        cart.add_item({'id': 5}, 3)

        assert ('update', 1, 5) in api.calls
        assert len(api.items) == 1
        assert server_quantity(api, 5) == 5

    def test_backend_failure_falls_back_to_local(self, storage, cart_api):
        received = []
        cart_local_fallback.connect(lambda sender, **kw: received.append(kw), weak=False)
        cart_api.mutation_error = NetworkError()
        cart = CartService(cart_api, storage, authenticated=True)
        cart.load()

        cart.add_item({'id': 8, 'price': '1.00'}, 1)

        assert cart.degraded is True
        assert storage.get_json(GUEST_CART_KEY)[0]['product_id'] == 8
        assert cart.items[0]['product_id'] == 8
        assert received[-1] == {'operation': 'add'}

    def test_auth_error_is_not_swallowed(self, storage, cart_api):
        cart_api.mutation_error = AuthError()
        cart = CartService(cart_api, storage, authenticated=True)

        with pytest.raises(AuthError):
            cart.add_item({'id': 8}, 1)
        assert storage.get_raw(GUEST_CART_KEY) is None

    def test_load_failure_shows_local_cart(self):
        storage = MemoryStorage({GUEST_CART_KEY: [local_line(1, 1)]})
        api = FakeCartApi()
        api.get_error = ServerError()
        cart = CartService(api, storage, authenticated=True)

        assert [item_product_id(item) for item in cart.load()] == [1]
        assert cart.degraded is True

    def test_closed_service_ignores_late_results(self, storage):
        api = FakeCartApi([{'id': 1, 'product_id': 5, 'quantity': 2}])
        cart = CartService(api, storage, authenticated=True)
        cart.close()

        cart.load()

        assert cart.items == []


class TestReconcileOnLogin:

    def test_sums_quantities_for_products_already_on_server(self):
        storage = MemoryStorage({GUEST_CART_KEY: [local_line(5, 3)]})
        api = FakeCartApi([{'id': 1, 'product_id': 5, 'quantity': 2}])
        cart = CartService(api, storage, authenticated=True)

        report = cart.reconcile_on_login()

        assert server_quantity(api, 5) == 5
        assert len(api.items) == 1
        assert report.updated == [5]
        assert storage.get_raw(GUEST_CART_KEY) is None

    def test_matches_nested_product_id_on_server(self):
        storage = MemoryStorage({GUEST_CART_KEY: [local_line(5, 1)]})
        api = FakeCartApi([{'id': 1, 'product': {'id': 5}, 'quantity': 4}])
        cart = CartService(api, storage, authenticated=True)

        cart.reconcile_on_login()

        assert api.items[0]['quantity'] == 5

    def test_adds_products_missing_from_server(self):
        storage = MemoryStorage({GUEST_CART_KEY: [local_line(7, 2)]})
        api = FakeCartApi([{'id': 1, 'product_id': 5, 'quantity': 1}])
        cart = CartService(api, storage, authenticated=True)

        report = cart.reconcile_on_login()

        assert server_quantity(api, 7) == 2
        assert server_quantity(api, 5) == 1
        assert report.added == [7]

    def test_lines_are_synced_in_order(self):
        storage = MemoryStorage({GUEST_CART_KEY: [local_line(1, 1), local_line(2, 1), local_line(3, 1)]})
        api = FakeCartApi()
        cart = CartService(api, storage, authenticated=True)

        cart.reconcile_on_login()

        assert [call[1] for call in api.calls if call[0] == 'add'] == [1, 2, 3]

    def test_one_failing_line_does_not_stop_the_others(self):
        storage = MemoryStorage({GUEST_CART_KEY: [local_line(1, 1), local_line(2, 4), local_line(3, 1)]})
        api = FakeCartApi()
        api.failing_products = {'2'}
        cart = CartService(api, storage, authenticated=True)

        report = cart.reconcile_on_login()

        assert server_quantity(api, 1) == 1
        assert server_quantity(api, 3) == 1
        assert report.added == [1, 3]
        assert report.failed[0]['product_id'] == 2
        kept = storage.get_json(GUEST_CART_KEY)
        assert [item_product_id(item) for item in kept] == [2]
        assert kept[0]['quantity'] == 4

    def test_nothing_synced_keeps_guest_cart(self):
        lines = [local_line(1, 1), local_line(2, 2)]
        storage = MemoryStorage({GUEST_CART_KEY: lines})
        api = FakeCartApi()
        api.failing_products = {'1', '2'}
        cart = CartService(api, storage, authenticated=True)

        report = cart.reconcile_on_login()

        assert storage.get_json(GUEST_CART_KEY) == lines
        assert report.synced_count == 0
        assert report.message

    def test_initial_fetch_failure_aborts(self):
        lines = [local_line(1, 1)]
        storage = MemoryStorage({GUEST_CART_KEY: lines})
        api = FakeCartApi()
        api.get_error = NetworkError()
        cart = CartService(api, storage, authenticated=True)

        report = cart.reconcile_on_login()

        assert report.aborted is True
        assert storage.get_json(GUEST_CART_KEY) == lines
        assert [call[0] for call in api.calls] == ['get']

    def test_empty_guest_cart_adopts_server_cart(self, storage):
        api = FakeCartApi([{'id': 1, 'product_id': 5, 'quantity': 2}])
        cart = CartService(api, storage, authenticated=True)

        report = cart.reconcile_on_login()

        assert cart.items == api.items
        assert report.synced_count == 0
        assert report.message is None

    def test_sends_cart_merged(self):
        received = []
        cart_merged.connect(lambda sender, report: received.append(report), weak=False)
        storage = MemoryStorage({GUEST_CART_KEY: [local_line(1, 1)]})
        cart = CartService(FakeCartApi(), storage, authenticated=True)

        report = cart.reconcile_on_login()

        assert received[-1] is report


class TestPersistOnLogout:

    def test_server_cart_is_written_back(self, storage):
        api = FakeCartApi([
            {'id': 11, 'product_id': 5, 'quantity': 2, 'price': '3.00'},
            {'id': 12, 'product': {'id': 6, 'name': 'Mask'}, 'quantity': 1},
        ])
        cart = CartService(api, storage, authenticated=True)
        cart.load()

        cart.persist_on_logout()

        saved = storage.get_json(GUEST_CART_KEY)
        assert [(item_product_id(item), item['quantity']) for item in saved] == [(5, 2), (6, 1)]
        assert all(item['id'].startswith('local_') for item in saved)
        assert len({item['id'] for item in saved}) == 2
        assert cart.items == []

    def test_unsynced_guest_lines_survive_logout(self):
        storage = MemoryStorage({GUEST_CART_KEY: [local_line(7, 2)]})
        api = FakeCartApi([{'id': 11, 'product_id': 3, 'quantity': 1}])
        api.failing_products = {'7'}
        cart = CartService(api, storage, authenticated=True)
        cart.reconcile_on_login()

        cart.persist_on_logout()

        saved = storage.get_json(GUEST_CART_KEY)
        assert [(item_product_id(item), item['quantity']) for item in saved] == [(3, 1), (7, 2)]
        assert len({item['id'] for item in saved}) == 2

    def test_fallback_line_from_earlier_request_survives_logout(self, storage):
        api = FakeCartApi([{'id': 11, 'product_id': 5, 'quantity': 1}])
        api.mutation_error = NetworkError()
        first = CartService(api, storage, authenticated=True)
        first.load()
        first.add_item({'id': 8, 'price': '1.00'}, 1)
        api.mutation_error = None

        second = CartService(api, storage, authenticated=True)
        second.load()
        second.persist_on_logout()

        saved = storage.get_json(GUEST_CART_KEY)
        assert sorted(item_product_id(item) for item in saved) == [5, 8]

    def test_logout_then_login_round_trip(self, storage):
        api = FakeCartApi([{'id': 11, 'product_id': 5, 'quantity': 2}])
        cart = CartService(api, storage, authenticated=True)
        cart.load()
        cart.persist_on_logout()

        guest = CartService(api, storage, authenticated=False)
        assert [item_product_id(item) for item in guest.load()] == [5]
