"""
Admin security decorators.
Provides authentication for admin panel routes.
"""

from functools import wraps
from flask import g

from pharmacy.middleware import login_required_response
from pharmacy.services.auth_service import ADMIN_AREA


def admin_required(f):
    """
    Decorator: Require admin user to be logged in.

    Redirects (or answers 401 to JSON callers) to the admin login page.

    IMPORTANT: This checks the admin credentials only. A logged-in customer
    is not an admin, and admin credentials never authenticate the storefront.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if g.get('admin_user') is None:
            return login_required_response(ADMIN_AREA, 'Please log in as an administrator.')
        return f(*args, **kwargs)

    return decorated_function
