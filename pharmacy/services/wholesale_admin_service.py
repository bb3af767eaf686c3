"""
Admin review queue for wholesale upgrade requests.

The queue itself is an immutable QueueState; every change goes through
reduce_queue() so the views and the tests see the same transitions.
"""
import logging
import re
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, Optional, Tuple

from flask import current_app

from pharmacy.exceptions import AuthError, StorefrontError, ValidationError, is_already_processed
from pharmacy.services.auth_service import ADMIN_AREA, get_backend_client
from pharmacy.services.backend_client import BackendClient, unwrap_list
from pharmacy.services.cache_service import ADMIN_SCOPE, CacheService, get_cache
from pharmacy.services.events import wholesale_request_rejected, wholesale_upgrade_approved

logger = logging.getLogger(__name__)

UUID_PATTERN = re.compile(
    r'^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$', re.IGNORECASE
)

DEFAULT_REJECTION_REASON = 'Request rejected by administrator'


def validate_request_id(request_id: Any) -> str:
    """
    Raises:
        ValidationError: If the id is not a UUID
    """
    value = str(request_id or '').strip()
    if not UUID_PATTERN.match(value):
        raise ValidationError('Invalid request id.', field_errors={
            'request_id': [f'"{value}" is not a valid request id.']
        })
    return value


@dataclass(frozen=True)
class WholesaleRequest:
    id: str
    user_id: Any = None
    company_name: Optional[str] = None
    commercial_register: Optional[str] = None
    tax_number: Optional[str] = None
    status: str = 'pending'
    rejection_reason: Optional[str] = None
    id_document_url: Optional[str] = None
    commercial_document_url: Optional[str] = None
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> 'WholesaleRequest':
        user = data.get('user') if isinstance(data.get('user'), dict) else {}
        return cls(
            id=str(data.get('id') or data.get('request_id') or ''),
            user_id=data.get('user_id') or user.get('id'),
            company_name=data.get('company_name'),
            commercial_register=data.get('commercial_register'),
            tax_number=data.get('tax_number'),
            status=str(data.get('status') or 'pending').lower(),
            rejection_reason=data.get('rejection_reason'),
            id_document_url=data.get('id_document_url') or data.get('id_document'),
            commercial_document_url=(data.get('commercial_document_url')
                                     or data.get('commercial_document')),
            customer_email=data.get('email') or user.get('email'),
            customer_name=data.get('full_name') or user.get('full_name') or user.get('name'),
            created_at=data.get('created_at'),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# Queue state and transitions -----------------------------------------------

@dataclass(frozen=True)
class QueueState:
    requests: Tuple[WholesaleRequest, ...] = ()
    customers: Tuple[Dict[str, Any], ...] = ()

    def find(self, request_id: str) -> Optional[WholesaleRequest]:
        for item in self.requests:
            if item.id == request_id:
                return item
        return None


@dataclass(frozen=True)
class QueueLoaded:
    requests: Tuple[WholesaleRequest, ...]


@dataclass(frozen=True)
class CustomersLoaded:
    customers: Tuple[Dict[str, Any], ...]


@dataclass(frozen=True)
class RequestRemoved:
    request_id: str


def reduce_queue(state: QueueState, event) -> QueueState:
    if isinstance(event, QueueLoaded):
        return replace(state, requests=tuple(event.requests))
    if isinstance(event, CustomersLoaded):
        return replace(state, customers=tuple(event.customers))
    if isinstance(event, RequestRemoved):
        return replace(state, requests=tuple(r for r in state.requests if r.id != event.request_id))
    raise TypeError(f"Unhandled queue event: {event!r}")


@dataclass(frozen=True)
class ActionOutcome:
    """Result of an admin decision; stale means the request was already gone or decided."""
    action: str
    request_id: str
    stale: bool = False
    user_id: Any = None
    message: str = ''
    requests: Tuple[WholesaleRequest, ...] = field(default=(), repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'action': self.action,
            'request_id': self.request_id,
            'stale': self.stale,
            'user_id': self.user_id,
            'message': self.message,
        }


class WholesaleAdminApi:
    """Backend endpoints used by the admin panel."""

    def __init__(self, client: BackendClient):
        self.client = client

    def list_requests(self, params: Dict[str, Any]) -> Any:
        return self.client.get('/admin/wholesale-requests', params=params)

    def list_customers(self) -> Any:
        return self.client.get('/admin/wholesale-customers')

    def update_status(self, request_id: str, status: str, rejection_reason: Optional[str] = None) -> Any:
        body = {'status': status}
        if rejection_reason is not None:
            body['rejection_reason'] = rejection_reason
        return self.client.put(f'/admin/wholesale-requests/{request_id}/status', json=body)

    def delete_request(self, request_id: str) -> Any:
        return self.client.delete(f'/admin/wholesale-requests/{request_id}')


class WholesaleAdminService:
    """Approve, reject and delete wholesale upgrade requests."""

    def __init__(self, api: WholesaleAdminApi, cache: Optional[CacheService] = None,
                 queue_limit: int = 1000, customers_ttl: int = 60,
                 default_rejection_reason: str = DEFAULT_REJECTION_REASON):
        self.api = api
        self.cache = cache
        self.queue_limit = queue_limit
        self.customers_ttl = customers_ttl
        self.default_rejection_reason = default_rejection_reason

    def load_queue(self, state: QueueState, page: Optional[int] = None,
                   search: Optional[str] = None) -> QueueState:
        params: Dict[str, Any] = {'status': 'pending', 'limit': self.queue_limit}
        if page:
            params['page'] = page
        if search:
            params['search'] = search

        payload = self.api.list_requests(params)
        requests = tuple(
            WholesaleRequest.from_payload(item)
            for item in unwrap_list(payload, 'requests')
            if isinstance(item, dict)
        )
        logger.debug(f"[WHOLESALE_ADMIN] Loaded {len(requests)} pending requests")
        return reduce_queue(state, QueueLoaded(requests))

    def _fetch_customers(self) -> list:
        return [c for c in unwrap_list(self.api.list_customers(), 'customers') if isinstance(c, dict)]

    def load_customers(self, state: QueueState, force: bool = False) -> QueueState:
        if self.cache is None:
            customers = self._fetch_customers()
        else:
            if force:
                self.cache.delete(ADMIN_SCOPE, 'wholesale', 'customers')
            customers = self.cache.memoize(ADMIN_SCOPE, 'wholesale', 'customers',
                                           self._fetch_customers, self.customers_ttl)
        return reduce_queue(state, CustomersLoaded(tuple(customers)))

    def _refresh_queue(self, state: QueueState) -> QueueState:
        try:
            return self.load_queue(state)
        except AuthError:
            raise
        except StorefrontError as e:
            logger.warning(f"[WHOLESALE_ADMIN] Queue refresh failed: {e.message}")
            return state

    def _stale(self, state: QueueState, action: str, request_id: str,
               error: StorefrontError) -> Tuple[QueueState, ActionOutcome]:
        logger.info(
            f"[WHOLESALE_ADMIN] Request {request_id} was already processed or removed "
            f"({error.status_code}); dropping it from the queue"
        )
        state = reduce_queue(state, RequestRemoved(request_id))
        state = self._refresh_queue(state)
        outcome = ActionOutcome(
            action, request_id, stale=True,
            message='This request was already processed. The list has been refreshed.',
            requests=state.requests,
        )
        return state, outcome

    def _user_id_for(self, state: QueueState, request_id: str, response: Any) -> Any:
        known = state.find(request_id)
        if known is not None and known.user_id is not None:
            return known.user_id
        if isinstance(response, dict):
            data = response.get('data') if isinstance(response.get('data'), dict) else response
            # Status updates answer {message, request: {...}} inside the envelope
            if isinstance(data.get('request'), dict):
                data = data['request']
            return WholesaleRequest.from_payload(data).user_id
        return None

    def approve(self, state: QueueState, request_id: str) -> Tuple[QueueState, ActionOutcome]:
        request_id = validate_request_id(request_id)
        try:
            response = self.api.update_status(request_id, 'approved')
        except AuthError:
            raise
        except StorefrontError as e:
            if is_already_processed(e):
                return self._stale(state, 'approve', request_id, e)
            raise

        user_id = self._user_id_for(state, request_id, response)
        state = reduce_queue(state, RequestRemoved(request_id))
        try:
            state = self.load_customers(state, force=True)
        except AuthError:
            raise
        except StorefrontError as e:
            logger.warning(f"[WHOLESALE_ADMIN] Customers refresh failed after approval: {e.message}")

        logger.info(f"[WHOLESALE_ADMIN] Approved request {request_id} (user {user_id})")
        wholesale_upgrade_approved.send(self, request_id=request_id, user_id=user_id)
        return state, ActionOutcome('approve', request_id, user_id=user_id,
                                    message='Request approved. The customer now has wholesale access.',
                                    requests=state.requests)

    def reject(self, state: QueueState, request_id: str,
               reason: Optional[str] = None) -> Tuple[QueueState, ActionOutcome]:
        request_id = validate_request_id(request_id)
        reason = (reason or '').strip() or self.default_rejection_reason
        try:
            response = self.api.update_status(request_id, 'rejected', rejection_reason=reason)
        except AuthError:
            raise
        except StorefrontError as e:
            if is_already_processed(e):
                return self._stale(state, 'reject', request_id, e)
            raise

        user_id = self._user_id_for(state, request_id, response)
        state = reduce_queue(state, RequestRemoved(request_id))
        logger.info(f"[WHOLESALE_ADMIN] Rejected request {request_id}: {reason}")
        wholesale_request_rejected.send(self, request_id=request_id, user_id=user_id, reason=reason)
        return state, ActionOutcome('reject', request_id, user_id=user_id,
                                    message='Request rejected.', requests=state.requests)

    def delete(self, state: QueueState, request_id: str) -> Tuple[QueueState, ActionOutcome]:
        request_id = validate_request_id(request_id)
        try:
            self.api.delete_request(request_id)
        except AuthError:
            raise
        except StorefrontError as e:
            if is_already_processed(e):
                return self._stale(state, 'delete', request_id, e)
            raise

        state = reduce_queue(state, RequestRemoved(request_id))
        logger.info(f"[WHOLESALE_ADMIN] Deleted request {request_id}")
        return state, ActionOutcome('delete', request_id, message='Request deleted.',
                                    requests=state.requests)


def get_wholesale_admin_service() -> WholesaleAdminService:
    """Admin service bound to the admin credentials of the current session."""
    config = current_app.config
    return WholesaleAdminService(
        WholesaleAdminApi(get_backend_client(ADMIN_AREA)),
        cache=get_cache(),
        queue_limit=config.get('ADMIN_QUEUE_LIMIT', 1000),
        customers_ttl=config.get('CACHE_WHOLESALE_CUSTOMERS_TTL', 60),
        default_rejection_reason=config.get('WHOLESALE_DEFAULT_REJECTION_REASON', DEFAULT_REJECTION_REASON),
    )
