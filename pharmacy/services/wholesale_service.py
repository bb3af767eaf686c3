"""
Wholesale upgrade workflow for retail customers.

A customer's upgrade request moves through:

    not_found -> pending -> approved | rejected

and a rejected customer may submit again. Each state is its own type
(NotFound, Pending, Approved, Rejected); code that branches on the state
goes through describe_state() or an isinstance chain ending in an error,
so a status string the code does not know about cannot slip through.
"""
import enum
import logging
from dataclasses import dataclass
from typing import Any, BinaryIO, Dict, Iterable, Optional, Union

from flask import current_app, g

from pharmacy.exceptions import (
    AuthError, ConflictError, NetworkError, ServerError, StorefrontError, ValidationError
)
from pharmacy.services.auth_service import CLIENT_AREA, get_backend_client
from pharmacy.services.backend_client import BackendClient, unwrap_list
from pharmacy.services.cache_service import CacheService, get_cache, user_scope
from pharmacy.services.events import wholesale_request_submitted

logger = logging.getLogger(__name__)

MAX_DOCUMENT_SIZE = 2 * 1024 * 1024
ALLOWED_DOCUMENT_TYPES = frozenset({'image/jpeg', 'image/png', 'application/pdf'})


class WholesaleStatus(enum.Enum):
    NOT_FOUND = 'not_found'
    PENDING = 'pending'
    APPROVED = 'approved'
    REJECTED = 'rejected'


@dataclass(frozen=True)
class NotFound:
    status = WholesaleStatus.NOT_FOUND


@dataclass(frozen=True)
class Pending:
    request_id: Optional[str] = None
    created_at: Optional[str] = None
    status = WholesaleStatus.PENDING


@dataclass(frozen=True)
class Approved:
    request_id: Optional[str] = None
    reason: Optional[str] = None
    status = WholesaleStatus.APPROVED


@dataclass(frozen=True)
class Rejected:
    reason: str
    request_id: Optional[str] = None
    status = WholesaleStatus.REJECTED


RequestState = Union[NotFound, Pending, Approved, Rejected]

DEFAULT_REJECTION_MESSAGE = 'Your upgrade request was rejected.'


def state_from_payload(data: Optional[Dict[str, Any]]) -> RequestState:
    """
    Build a request state from a backend record.

    Raises:
        ValueError: If the record carries a status this module does not know
    """
    if not data:
        return NotFound()

    raw = str(data.get('status') or WholesaleStatus.NOT_FOUND.value).strip().lower()
    try:
        status = WholesaleStatus(raw)
    except ValueError:
        raise ValueError(f"Unknown wholesale request status: {raw!r}")

    request_id = data.get('id') or data.get('request_id')
    reason = data.get('rejection_reason') or data.get('reason')

    if status is WholesaleStatus.NOT_FOUND:
        return NotFound()
    if status is WholesaleStatus.PENDING:
        return Pending(request_id=request_id, created_at=data.get('created_at'))
    if status is WholesaleStatus.APPROVED:
        return Approved(request_id=request_id, reason=reason)
    return Rejected(reason=reason or DEFAULT_REJECTION_MESSAGE, request_id=request_id)


def describe_state(state: RequestState) -> Dict[str, Any]:
    """JSON-ready view of a request state, with the message shown to the customer."""
    if isinstance(state, NotFound):
        return {'status': state.status.value, 'can_submit': True,
                'message': 'You have not requested a wholesale account yet.'}
    if isinstance(state, Pending):
        return {'status': state.status.value, 'can_submit': False, 'request_id': state.request_id,
                'message': 'Your upgrade request is under review. You will be notified once it is decided.'}
    if isinstance(state, Approved):
        return {'status': state.status.value, 'can_submit': False, 'request_id': state.request_id,
                'message': 'Your wholesale account is active.'}
    if isinstance(state, Rejected):
        return {'status': state.status.value, 'can_submit': True, 'request_id': state.request_id,
                'rejection_reason': state.reason, 'message': state.reason}
    raise TypeError(f"Unhandled wholesale request state: {state!r}")


def _latest_record(payload: Any) -> Optional[Dict[str, Any]]:
    records = [r for r in unwrap_list(payload, 'requests') if isinstance(r, dict)]
    if records:
        # ISO timestamps sort chronologically; records without one sort first
        return max(records, key=lambda r: str(r.get('created_at') or ''))
    if isinstance(payload, dict):
        if isinstance(payload.get('data'), dict):
            payload = payload['data']
        if payload.get('status'):
            return payload
    return None


# Submission -----------------------------------------------------------------

@dataclass
class UpgradeDocument:
    """An uploaded document, already measured."""
    filename: str
    content_type: str
    size: int
    stream: BinaryIO

    @classmethod
    def from_file_storage(cls, file) -> Optional['UpgradeDocument']:
        """Wrap a werkzeug FileStorage; None when no file was chosen."""
        if file is None or not getattr(file, 'filename', None):
            return None
        stream = file.stream
        stream.seek(0, 2)  # Seek to end
        size = stream.tell()
        stream.seek(0)  # Reset
        return cls(
            filename=file.filename,
            content_type=(file.mimetype or file.content_type or '').lower(),
            size=size,
            stream=stream,
        )


@dataclass
class UpgradeSubmission:
    company_name: str
    commercial_register: str
    tax_number: Optional[str]
    id_document: Optional[UpgradeDocument]
    commercial_document: Optional[UpgradeDocument]


DOCUMENT_LABELS = (
    ('id_document', 'ID document'),
    ('commercial_document', 'commercial register document'),
)


def validate_submission(
    submission: UpgradeSubmission,
    max_size: int = MAX_DOCUMENT_SIZE,
    allowed_types: Iterable[str] = ALLOWED_DOCUMENT_TYPES
) -> None:
    """
    Check a submission before anything is sent.

    Raises:
        ValidationError: With one message list per offending field
    """
    errors: Dict[str, list] = {}
    allowed = set(allowed_types)

    if not (submission.company_name or '').strip():
        errors['company_name'] = ['Company name is required.']
    if not (submission.commercial_register or '').strip():
        errors['commercial_register'] = ['Commercial register number is required.']

    for field_name, label in DOCUMENT_LABELS:
        document = getattr(submission, field_name)
        if document is None:
            errors[field_name] = [f'Please attach the {label}.']
            continue
        problems = []
        if document.content_type not in allowed:
            problems.append(
                f'The {label} must be a JPEG, PNG or PDF file (got {document.content_type or "unknown"}).'
            )
        if document.size > max_size:
            problems.append(
                f'The {label} "{document.filename}" is too large. Maximum {max_size / (1024 * 1024):.0f} MB.'
            )
        if problems:
            errors[field_name] = problems

    if errors:
        raise ValidationError('Please correct the highlighted fields.', field_errors=errors)


class WholesaleApi:
    """Backend endpoints used by customers."""

    def __init__(self, client: BackendClient):
        self.client = client

    def get_my_requests(self) -> Any:
        return self.client.get('/wholesale/requests')

    def submit(self, submission: UpgradeSubmission) -> Dict[str, Any]:
        data = {
            'company_name': submission.company_name.strip(),
            'commercial_register': submission.commercial_register.strip(),
            'tax_number': (submission.tax_number or '').strip(),
        }
        files = {
            name: (doc.filename, doc.stream, doc.content_type)
            for name, doc in (
                ('id_document', submission.id_document),
                ('commercial_document', submission.commercial_document),
            )
        }
        result = self.client.post('/wholesale/requests', data=data, files=files)
        if isinstance(result, dict) and isinstance(result.get('data'), dict):
            return result['data']
        return result if isinstance(result, dict) else {}


@dataclass(frozen=True)
class AccessDecision:
    has_access: bool
    action: Optional[str] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'has_access': self.has_access, 'action': self.action, 'message': self.message}


class WholesaleService:
    """Customer side of the upgrade workflow."""

    def __init__(self, api: WholesaleApi, cache: Optional[CacheService] = None,
                 user_id: Any = None, status_ttl: int = 30,
                 max_document_size: int = MAX_DOCUMENT_SIZE,
                 allowed_types: Iterable[str] = ALLOWED_DOCUMENT_TYPES):
        self.api = api
        self.cache = cache
        self.user_id = user_id
        self.status_ttl = status_ttl
        self.max_document_size = max_document_size
        self.allowed_types = frozenset(allowed_types)

    def _cached_status(self) -> Optional[RequestState]:
        if self.cache is None or self.user_id is None:
            return None
        cached = self.cache.get(user_scope(self.user_id), 'wholesale', 'status')
        if cached is None:
            return None
        try:
            return state_from_payload(cached)
        except ValueError:
            return None

    def _remember(self, state: RequestState) -> None:
        if self.cache is None or self.user_id is None or isinstance(state, NotFound):
            return
        record = {'status': state.status.value, 'id': getattr(state, 'request_id', None)}
        if isinstance(state, (Approved, Rejected)):
            record['rejection_reason'] = state.reason
        self.cache.set(user_scope(self.user_id), 'wholesale', 'status', record, self.status_ttl)

    def forget_status(self) -> None:
        if self.cache is not None and self.user_id is not None:
            self.cache.delete(user_scope(self.user_id), 'wholesale', 'status')

    def check_status(self) -> RequestState:
        """
        Current state of the customer's latest request.

        Any failure other than an expired session reads as NotFound so a
        transient error never blocks the customer from submitting.
        """
        cached = self._cached_status()
        if cached is not None:
            return cached

        try:
            payload = self.api.get_my_requests()
        except AuthError:
            raise
        except StorefrontError as e:
            if e.status_code != 404:
                logger.warning(f"[WHOLESALE] Status lookup failed ({e.message}); treating as not_found")
            return NotFound()

        try:
            state = state_from_payload(_latest_record(payload))
        except ValueError as e:
            logger.warning(f"[WHOLESALE] {e}; treating as not_found")
            return NotFound()

        self._remember(state)
        return state

    def submit_request(self, submission: UpgradeSubmission) -> RequestState:
        """
        Validate and send an upgrade request.

        A 409 from the backend means a request is already pending; that is
        reported as Pending rather than as an error.
        """
        validate_submission(submission, self.max_document_size, self.allowed_types)

        try:
            data = self.api.submit(submission)
        except ConflictError:
            logger.info(f"[WHOLESALE] User {self.user_id} already has a pending request")
            state = Pending()
        except ServerError as e:
            logger.error(f"[WHOLESALE] Submission failed on the server: {e.message}")
            raise ServerError('Your request could not be submitted right now. Please try again later.',
                              status_code=e.status_code, retryable=e.retryable)
        except NetworkError:
            logger.error("[WHOLESALE] Submission failed: backend unreachable")
            raise
        else:
            state = Pending(request_id=data.get('id'), created_at=data.get('created_at'))
            logger.info(f"[WHOLESALE] Upgrade request submitted for user {self.user_id}: {state.request_id}")

        self.forget_status()
        self._remember(state)
        wholesale_request_submitted.send(self, user_id=self.user_id, state=state)
        return state

    def check_access(self, user) -> AccessDecision:
        """Decide whether a session user may use wholesale features."""
        if user is None:
            return AccessDecision(False, 'login', 'Please log in to access wholesale features.')
        if user.wholesale_access and user.is_active:
            return AccessDecision(True)

        state = self.check_status()
        if isinstance(state, Approved):
            return AccessDecision(True)
        if isinstance(state, Pending):
            return AccessDecision(False, 'pending', describe_state(state)['message'])
        if isinstance(state, Rejected):
            return AccessDecision(False, 'rejected', state.reason)
        if isinstance(state, NotFound):
            return AccessDecision(False, 'upgrade',
                                  'Please upgrade to a wholesale account to access this feature.')
        raise TypeError(f"Unhandled wholesale request state: {state!r}")


def get_wholesale_service() -> WholesaleService:
    """Wholesale service for the logged-in customer of the current request."""
    config = current_app.config
    user = g.get('client_user')
    return WholesaleService(
        WholesaleApi(get_backend_client(CLIENT_AREA)),
        cache=get_cache(),
        user_id=user.id if user else None,
        status_ttl=config.get('CACHE_WHOLESALE_STATUS_TTL', 30),
        max_document_size=config.get('WHOLESALE_MAX_DOCUMENT_SIZE', MAX_DOCUMENT_SIZE),
        allowed_types=config.get('WHOLESALE_ALLOWED_MIME_TYPES', ALLOWED_DOCUMENT_TYPES),
    )
