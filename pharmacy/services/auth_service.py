"""
Authentication service for storefront and admin sessions.

Customer and admin credentials live side by side in the Flask session under
separate keys. Expiring or logging out of one area never clears the other.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from flask import current_app, g, session

from pharmacy.exceptions import AuthError, StorefrontError, ValidationError
from pharmacy.services.backend_client import BackendClient

logger = logging.getLogger(__name__)

CLIENT_AREA = 'client'
ADMIN_AREA = 'admin'

CREDENTIAL_KEYS = {
    CLIENT_AREA: {
        'token': 'client_auth_token',
        'refresh_token': 'client_refresh_token',
        'user': 'client_user',
    },
    ADMIN_AREA: {
        'token': 'admin_auth_token',
        'refresh_token': 'admin_refresh_token',
        'user': 'admin_user',
    },
}

LOGIN_PATHS = {
    CLIENT_AREA: '/login',
    ADMIN_AREA: '/admin/login',
}


@dataclass(frozen=True)
class SessionUser:
    """Identity supplied by the backend at login."""
    id: Any
    email: Optional[str] = None
    full_name: Optional[str] = None
    account_type: str = 'retail'
    wholesale_access: bool = False
    is_active: bool = True

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> 'SessionUser':
        is_active = data.get('is_active', data.get('isActive', True))
        return cls(
            id=data.get('id') or data.get('user_id'),
            email=data.get('email'),
            full_name=data.get('full_name') or data.get('name'),
            account_type=data.get('account_type') or data.get('accountType') or 'retail',
            wholesale_access=bool(data.get('wholesale_access', data.get('wholesaleAccess', False))),
            is_active=bool(is_active),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'email': self.email,
            'full_name': self.full_name,
            'account_type': self.account_type,
            'wholesale_access': self.wholesale_access,
            'is_active': self.is_active,
        }

    @property
    def is_wholesale(self) -> bool:
        return (self.account_type == 'wholesale' or self.wholesale_access) and self.is_active


def area_for_path(path: str) -> str:
    """Admin panel paths belong to the admin area, everything else to the storefront."""
    return ADMIN_AREA if (path or '').startswith('/admin') else CLIENT_AREA


def get_token(area: str) -> Optional[str]:
    return session.get(CREDENTIAL_KEYS[area]['token'])


def get_user(area: str) -> Optional[SessionUser]:
    data = session.get(CREDENTIAL_KEYS[area]['user'])
    if not data:
        return None
    return SessionUser.from_payload(data)


def is_authenticated(area: str) -> bool:
    return bool(get_token(area))


def store_credentials(area: str, token: str, refresh_token: Optional[str] = None,
                      user: Optional[SessionUser] = None) -> None:
    keys = CREDENTIAL_KEYS[area]
    session[keys['token']] = token
    if refresh_token:
        session[keys['refresh_token']] = refresh_token
    if user is not None:
        session[keys['user']] = user.to_dict()
    session.permanent = True


def clear_credentials(area: str) -> None:
    """Remove one area's credentials only."""
    for key in CREDENTIAL_KEYS[area].values():
        session.pop(key, None)
    logger.info(f"[AUTH] Cleared {area} credentials")


def login_redirect(area: str, next_url: Optional[str] = None) -> str:
    """Login path for the area, keeping the intended destination in ?next=."""
    path = LOGIN_PATHS[area]
    if next_url and next_url != path:
        return f"{path}?{urlencode({'next': next_url})}"
    return path


def expire_session(area: str, next_url: Optional[str] = None) -> Dict[str, Any]:
    """
    Terminate the area's session client-side.

    Returns the redirect target and the delay (seconds) the UI should wait
    so the expiry message stays visible.
    """
    clear_credentials(area)
    return {
        'redirect': login_redirect(area, next_url),
        'redirect_delay': current_app.config.get('SESSION_EXPIRED_REDIRECT_DELAY', 2),
    }


def _unwrap(data: Any) -> Dict[str, Any]:
    if isinstance(data, dict) and isinstance(data.get('data'), dict) and 'token' not in data:
        return data['data']
    return data if isinstance(data, dict) else {}


def login(client: BackendClient, area: str, identifier: str, password: str) -> SessionUser:
    """
    Authenticate against the backend and store the area's credentials.

    Args:
        client: Backend client (the login call itself is unauthenticated)
        area: CLIENT_AREA or ADMIN_AREA
        identifier: Email address or phone number
        password: Plain password

    Returns:
        The logged-in SessionUser

    Raises:
        ValidationError: If identifier or password is empty
        AuthError: If the backend rejects the credentials
    """
    identifier = (identifier or '').strip()
    if not identifier or not password:
        raise ValidationError('Email or phone and password are required.', field_errors={
            field: ['This field is required.']
            for field, value in (('identifier', identifier), ('password', password)) if not value
        })

    body = {'password': password}
    body['email' if '@' in identifier else 'phone'] = identifier

    try:
        data = _unwrap(client.post('/auth/login', json=body, retry_auth=False))
    except AuthError:
        raise AuthError('Invalid email/phone or password.')
    token = data.get('token') or data.get('access_token')
    if not token:
        raise AuthError('Invalid email/phone or password.')

    user = SessionUser.from_payload(data.get('user') or {})
    store_credentials(area, token, data.get('refresh_token'), user)
    logger.info(f"[AUTH] {area} login for user {user.id}")
    return user


def refresh_session(client: BackendClient, area: str) -> bool:
    """Exchange the stored refresh token for a new access token."""
    refresh_token = session.get(CREDENTIAL_KEYS[area]['refresh_token'])
    if not refresh_token:
        return False

    data = _unwrap(client.post('/auth/refresh-token', json={'refresh_token': refresh_token},
                               retry_auth=False))
    token = data.get('token') or data.get('access_token')
    if not token:
        return False

    store_credentials(area, token, data.get('refresh_token'))
    logger.info(f"[AUTH] Refreshed {area} token")
    return True


def logout(client: BackendClient, area: str) -> None:
    """Best-effort backend logout, then clear the area's credentials."""
    try:
        if is_authenticated(area):
            client.post('/auth/logout', json={}, retry_auth=False)
    except StorefrontError as e:
        logger.warning(f"[AUTH] Backend logout failed: {e.message}")
    finally:
        clear_credentials(area)


def build_backend_client(area: str) -> BackendClient:
    """Create a backend client bound to the area's credentials in the session."""
    config = current_app.config
    base_url = f"{config['BACKEND_BASE_URL'].rstrip('/')}/{config['BACKEND_API_PATH'].strip('/')}"

    client = BackendClient(
        base_url,
        token_provider=lambda: get_token(area),
        timeout=config.get('BACKEND_TIMEOUT', 30),
    )
    client.refresh = lambda: refresh_session(client, area)
    client.on_session_expired = lambda: clear_credentials(area)
    return client


def get_backend_client(area: str) -> BackendClient:
    """Per-request backend client for the area."""
    clients = g.setdefault('_backend_clients', {})
    if area not in clients:
        clients[area] = build_backend_client(area)
    return clients[area]
