"""
Account blueprint: the customer's last shipping address on this browser.
"""

from flask import Blueprint, g, jsonify, Response

from pharmacy.exceptions import ValidationError
from pharmacy.forms.account_forms import ShippingAddressForm
from pharmacy.middleware import require_login
from pharmacy.services.browser_storage import (
    load_shipping_address, purge_legacy_keys, save_shipping_address
)

account_bp = Blueprint('account', __name__, url_prefix='/account')


@account_bp.route('/shipping-address', methods=['GET'])
@require_login
def get_shipping_address() -> Response:
    address = load_shipping_address(g.storage, g.client_user.id)
    purge_legacy_keys(g.storage)
    return jsonify({'status': 'success', 'address': address})


@account_bp.route('/shipping-address', methods=['PUT'])
@require_login
def put_shipping_address() -> Response:
    form = ShippingAddressForm()
    if not form.validate_on_submit():
        raise ValidationError.from_form(form)

    address = form.to_address()
    save_shipping_address(g.storage, g.client_user.id, address)
    return jsonify({'status': 'success', 'address': address})
