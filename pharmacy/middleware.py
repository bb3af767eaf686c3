"""Middleware for session credentials and browser storage context."""
import re
import uuid
from urllib.parse import urlsplit
from functools import wraps

from flask import current_app, flash, g, jsonify, redirect, request

from pharmacy.database import get_session
from pharmacy.services.auth_service import (
    ADMIN_AREA, CLIENT_AREA, get_user, is_authenticated, login_redirect
)
from pharmacy.services.browser_storage import DatabaseStorage

BROWSER_ID_PATTERN = re.compile(r'^[0-9a-f]{32}$')


def load_request_context():
    """
    Load the current customer, admin and browser storage into g.

    Sets g.client_user, g.admin_user, g.browser_id and g.storage.
    A browser without a valid browser_id cookie gets a new one in
    set_browser_id_cookie().
    """
    g.client_user = get_user(CLIENT_AREA) if is_authenticated(CLIENT_AREA) else None
    g.admin_user = get_user(ADMIN_AREA) if is_authenticated(ADMIN_AREA) else None

    browser_id = request.cookies.get(current_app.config['BROWSER_ID_COOKIE'])
    g.new_browser_id = not browser_id or not BROWSER_ID_PATTERN.match(browser_id)
    if g.new_browser_id:
        browser_id = uuid.uuid4().hex
    g.browser_id = browser_id
    g.storage = DatabaseStorage(get_session(), browser_id)


def set_browser_id_cookie(response):
    if g.get('new_browser_id'):
        response.set_cookie(
            current_app.config['BROWSER_ID_COOKIE'],
            g.browser_id,
            max_age=current_app.config.get('BROWSER_ID_MAX_AGE'),
            httponly=True,
            secure=current_app.config.get('SESSION_COOKIE_SECURE', False),
            samesite=current_app.config.get('SESSION_COOKIE_SAMESITE', 'Lax'),
        )
    return response


def wants_json():
    """JSON callers get JSON errors; browsers get flash + redirect."""
    if request.is_json or request.headers.get('X-Requested-With') == 'XMLHttpRequest':
        return True
    best = request.accept_mimetypes.best_match(['application/json', 'text/html'])
    return best == 'application/json'


def current_path():
    return request.full_path.rstrip('?')


def intended_destination():
    """
    Where the user was headed, for ?next= after login.

    For GET that is the requested path; for API calls made from a page it
    is the page itself, taken from a same-host Referer.
    """
    if request.method == 'GET':
        return current_path()
    if request.referrer:
        referrer = urlsplit(request.referrer)
        if referrer.netloc == request.host and referrer.path:
            return referrer.path + (f'?{referrer.query}' if referrer.query else '')
    return None


def safe_next_url(value, default='/'):
    """Only local paths are accepted as post-login targets."""
    if not value or not value.startswith('/') or value.startswith('//'):
        return default
    # Browsers read a backslash as a slash and drop tabs and newlines
    if any(ch in value for ch in '\\\t\r\n'):
        return default
    return value


def login_required_response(area, message):
    target = login_redirect(area, intended_destination())
    if wants_json():
        return jsonify({'status': 'error', 'message': message, 'redirect': target}), 401
    flash(message, 'warning')
    return redirect(target)


def require_login(f):
    """
    Decorator: Require a logged-in customer.

    Keeps the requested path in ?next= so login can return to it.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if g.get('client_user') is None:
            return login_required_response(CLIENT_AREA, 'Please log in to continue.')
        return f(*args, **kwargs)
    return decorated_function
