"""
Admin Blueprint - Wholesale review panel.

Routes:
- /admin/login - Admin authentication
- /admin/logout - Admin logout
- /admin/wholesale-requests - Pending upgrade requests
- /admin/wholesale-requests/<id>/approve - Approve a request
- /admin/wholesale-requests/<id>/reject - Reject a request
- /admin/wholesale-requests/<id> (DELETE) - Delete a request
- /admin/wholesale-customers - Approved wholesale customers
"""

from flask import Blueprint, request, redirect, flash, jsonify, Response, current_app, g
from typing import Optional

from pharmacy.blueprints.metrics import record_wholesale_action
from pharmacy.decorators.admin_security import admin_required
from pharmacy.exceptions import ConflictError, StorefrontError, ValidationError
from pharmacy.forms.auth_forms import LoginForm
from pharmacy.forms.wholesale_forms import RejectRequestForm
from pharmacy.middleware import safe_next_url, wants_json
from pharmacy.services import auth_service
from pharmacy.services.auth_service import ADMIN_AREA, get_backend_client
from pharmacy.services.cache_service import ADMIN_SCOPE, get_cache
from pharmacy.services.wholesale_admin_service import (
    ActionOutcome, QueueState, get_wholesale_admin_service, validate_request_id
)


admin_bp = Blueprint('admin', __name__, url_prefix='/admin')


def _parse_page(value: Optional[str]) -> Optional[int]:
    """Safely parse the page query argument."""
    try:
        page = int(value)
    except (TypeError, ValueError):
        return None
    return page if page > 0 else None


def _decision_response(outcome: ActionOutcome) -> Response:
    body = {'status': 'success', **outcome.to_dict()}
    if outcome.stale:
        body['requests'] = [item.to_dict() for item in outcome.requests]
    return jsonify(body)


def _run_decision(action: str, request_id: str, decide) -> Response:
    """
    Run one approve/reject/delete on a request.

    A second click on the same request while the first is still running is
    refused with 409.
    """
    request_id = validate_request_id(request_id)
    cache = get_cache()
    guard = f'request:{request_id}'
    if not cache.acquire_in_flight(ADMIN_SCOPE, guard, current_app.config.get('IN_FLIGHT_TTL', 30)):
        record_wholesale_action(action, 'duplicate')
        raise ConflictError('This request is already being processed.')

    try:
        _, outcome = decide(get_wholesale_admin_service(), QueueState(), request_id)
    except StorefrontError:
        record_wholesale_action(action, 'error')
        raise
    finally:
        cache.release_in_flight(ADMIN_SCOPE, guard)

    record_wholesale_action(action, 'stale' if outcome.stale else 'success')
    return _decision_response(outcome)


@admin_bp.route('/login', methods=['POST'])
def login() -> Response:
    """Admin login - separate from customer login."""
    form = LoginForm()
    if not form.validate_on_submit():
        raise ValidationError.from_form(form)

    user = auth_service.login(
        get_backend_client(ADMIN_AREA),
        ADMIN_AREA,
        form.identifier.data,
        form.password.data
    )
    g.admin_user = user
    target = safe_next_url(form.next.data or request.args.get('next'), default='/admin/wholesale-requests')

    if wants_json():
        return jsonify({'status': 'success', 'user': user.to_dict(), 'redirect': target})
    flash(f'Welcome, {user.email or user.full_name}!', 'success')
    return redirect(target)


@admin_bp.route('/logout', methods=['POST'])
def logout() -> Response:
    """Admin logout - clears admin credentials only."""
    auth_service.logout(get_backend_client(ADMIN_AREA), ADMIN_AREA)
    g.admin_user = None
    if wants_json():
        return jsonify({'status': 'success', 'redirect': '/admin/login'})
    flash('Admin session closed.', 'success')
    return redirect('/admin/login')


@admin_bp.route('/wholesale-requests', methods=['GET'])
@admin_required
def list_requests() -> Response:
    """Pending upgrade requests, newest first as the backend returns them."""
    state = get_wholesale_admin_service().load_queue(
        QueueState(),
        page=_parse_page(request.args.get('page')),
        search=(request.args.get('search') or '').strip() or None
    )
    return jsonify({
        'status': 'success',
        'requests': [item.to_dict() for item in state.requests],
        'count': len(state.requests),
    })


@admin_bp.route('/wholesale-customers', methods=['GET'])
@admin_required
def list_customers() -> Response:
    state = get_wholesale_admin_service().load_customers(
        QueueState(),
        force=request.args.get('refresh') in ('1', 'true')
    )
    return jsonify({
        'status': 'success',
        'customers': list(state.customers),
        'count': len(state.customers),
    })


@admin_bp.route('/wholesale-requests/<request_id>/approve', methods=['POST'])
@admin_required
def approve_request(request_id: str) -> Response:
    return _run_decision(
        'approve', request_id,
        lambda service, state, rid: service.approve(state, rid)
    )


@admin_bp.route('/wholesale-requests/<request_id>/reject', methods=['POST'])
@admin_required
def reject_request(request_id: str) -> Response:
    form = RejectRequestForm()
    if not form.validate_on_submit():
        raise ValidationError.from_form(form)
    reason = form.reason.data

    return _run_decision(
        'reject', request_id,
        lambda service, state, rid: service.reject(state, rid, reason)
    )


@admin_bp.route('/wholesale-requests/<request_id>', methods=['DELETE'])
@admin_required
def delete_request(request_id: str) -> Response:
    return _run_decision(
        'delete', request_id,
        lambda service, state, rid: service.delete(state, rid)
    )
