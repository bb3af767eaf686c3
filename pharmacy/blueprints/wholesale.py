"""
Wholesale blueprint: upgrade request status, access check and submission.
"""

from flask import Blueprint, current_app, g, jsonify, Response
from typing import Tuple

from pharmacy.blueprints.metrics import record_wholesale_action
from pharmacy.exceptions import ConflictError, StorefrontError, ValidationError
from pharmacy.forms.wholesale_forms import WholesaleUpgradeForm
from pharmacy.middleware import require_login
from pharmacy.services.cache_service import get_cache, user_scope
from pharmacy.services.wholesale_service import (
    UpgradeDocument, UpgradeSubmission, describe_state, get_wholesale_service
)

wholesale_bp = Blueprint('wholesale', __name__, url_prefix='/wholesale')

SUBMIT_ACTION = 'wholesale-submit'


@wholesale_bp.route('/status', methods=['GET'])
@require_login
def status() -> Response:
    state = get_wholesale_service().check_status()
    return jsonify(describe_state(state))


@wholesale_bp.route('/access', methods=['GET'])
def access() -> Response:
    """Whether the visitor may use wholesale features, and what to do if not."""
    decision = get_wholesale_service().check_access(g.get('client_user'))
    return jsonify(decision.to_dict())


@wholesale_bp.route('/requests', methods=['POST'])
@require_login
def submit_request() -> Tuple[Response, int]:
    form = WholesaleUpgradeForm()
    if not form.validate_on_submit():
        raise ValidationError.from_form(form)

    submission = UpgradeSubmission(
        company_name=form.company_name.data or '',
        commercial_register=form.commercial_register.data or '',
        tax_number=form.tax_number.data,
        id_document=UpgradeDocument.from_file_storage(form.id_document.data),
        commercial_document=UpgradeDocument.from_file_storage(form.commercial_document.data),
    )

    scope = user_scope(g.client_user.id)
    cache = get_cache()
    if not cache.acquire_in_flight(scope, SUBMIT_ACTION, current_app.config.get('IN_FLIGHT_TTL', 30)):
        record_wholesale_action('submit', 'duplicate')
        raise ConflictError('Your request is already being submitted. Please wait.')

    try:
        state = get_wholesale_service().submit_request(submission)
    except ValidationError:
        record_wholesale_action('submit', 'invalid')
        raise
    except StorefrontError:
        record_wholesale_action('submit', 'error')
        raise
    finally:
        cache.release_in_flight(scope, SUBMIT_ACTION)

    record_wholesale_action('submit', 'pending')
    current_app.logger.info(f"[WHOLESALE] Upgrade request pending for user {g.client_user.id}")
    return jsonify({'status': 'success', **describe_state(state)}), 201
