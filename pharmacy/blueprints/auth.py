"""
Authentication blueprint for the storefront.
Handles customer login (with guest cart reconciliation) and logout.
"""

from flask import Blueprint, flash, g, jsonify, redirect, request, Response
from typing import Union, Tuple
import logging

from pharmacy.exceptions import AuthError, ValidationError
from pharmacy.forms.auth_forms import LoginForm
from pharmacy.middleware import safe_next_url, wants_json
from pharmacy.services import auth_service
from pharmacy.services.auth_service import CLIENT_AREA, get_backend_client
from pharmacy.services.cart_service import cart_summary, get_cart_service

logger = logging.getLogger(__name__)


auth_bp = Blueprint('auth', __name__)


@auth_bp.route('/login', methods=['POST'])
def login() -> Union[Response, Tuple[Response, int]]:
    """
    Log a customer in, then merge the guest cart into the server cart.

    A merge problem never fails the login; it is reported in 'merge'.
    """
    form = LoginForm()
    if not form.validate_on_submit():
        raise ValidationError.from_form(form)

    user = auth_service.login(
        get_backend_client(CLIENT_AREA),
        CLIENT_AREA,
        form.identifier.data,
        form.password.data
    )
    g.client_user = user

    cart = get_cart_service(authenticated=True)
    report = cart.reconcile_on_login()
    target = safe_next_url(form.next.data or request.args.get('next'))

    if wants_json():
        return jsonify({
            'status': 'success',
            'user': user.to_dict(),
            'cart': {'items': cart.items, 'summary': cart_summary(cart.items)},
            'merge': report.to_dict(),
            'redirect': target,
        })

    if report.message:
        flash(report.message, 'warning' if (report.aborted or report.failed) else 'info')
    return redirect(target)


@auth_bp.route('/logout', methods=['POST'])
def logout() -> Response:
    """
    Save the cart on this browser, then end the customer session.

    Admin credentials in the same session are left alone.
    """
    cart = get_cart_service()
    if cart.authenticated:
        try:
            cart.load()
            cart.persist_on_logout()
        except AuthError:
            # Session already expired; the guest cart on this browser is left as it is
            logger.info("[AUTH] Session expired before logout; cart not saved")

    auth_service.logout(get_backend_client(CLIENT_AREA), CLIENT_AREA)
    g.client_user = None

    if wants_json():
        return jsonify({'status': 'success', 'redirect': '/'})
    flash('You have been logged out.', 'info')
    return redirect('/')
