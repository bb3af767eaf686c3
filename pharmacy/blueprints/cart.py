"""
Cart blueprint: JSON endpoints for the storefront cart.

Guests work on the cart kept for their browser; logged-in customers on
their server cart, with the browser copy as fallback when the backend fails.
"""

from flask import Blueprint, jsonify, Response
from typing import Any, Dict, List

from pharmacy.exceptions import ValidationError
from pharmacy.forms.cart_forms import AddCartItemForm, UpdateCartItemForm
from pharmacy.services.cart_service import CartService, cart_summary, get_cart_service

cart_bp = Blueprint('cart', __name__, url_prefix='/cart')


def _cart_response(cart: CartService, items: List[Dict[str, Any]], status: int = 200):
    body = {
        'status': 'success',
        'items': items,
        'summary': cart_summary(items),
        'source': 'server' if cart.authenticated and not cart.degraded else 'local',
    }
    if cart.degraded:
        body['message'] = 'The server could not be reached. Your cart is saved on this device for now.'
    return jsonify(body), status


@cart_bp.route('', methods=['GET'])
def view_cart() -> Response:
    cart = get_cart_service()
    return _cart_response(cart, cart.load())


@cart_bp.route('/items', methods=['POST'])
def add_item() -> Response:
    form = AddCartItemForm()
    if not form.validate_on_submit():
        raise ValidationError.from_form(form)

    cart = get_cart_service()
    cart.load()
    items = cart.add_item(form.product_snapshot(), form.quantity.data or 1)
    return _cart_response(cart, items, 201)


@cart_bp.route('/items/<item_id>', methods=['PUT'])
def update_item(item_id: str) -> Response:
    form = UpdateCartItemForm()
    if not form.validate_on_submit():
        raise ValidationError.from_form(form)

    cart = get_cart_service()
    cart.load()
    return _cart_response(cart, cart.update_item(item_id, form.quantity.data))


@cart_bp.route('/items/<item_id>', methods=['DELETE'])
def remove_item(item_id: str) -> Response:
    cart = get_cart_service()
    cart.load()
    return _cart_response(cart, cart.remove_item(item_id))


@cart_bp.route('', methods=['DELETE'])
def clear_cart() -> Response:
    cart = get_cart_service()
    cart.clear()
    return _cart_response(cart, cart.items)
