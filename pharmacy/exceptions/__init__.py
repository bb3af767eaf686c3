"""Custom exceptions for the pharmacy storefront."""


class StorefrontError(Exception):
    """Base exception for all application errors."""
    def __init__(self, message="An unexpected error occurred", status_code=500, payload=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload

    def to_dict(self):
        rv = dict(self.payload or ())
        rv['message'] = self.message
        rv['status'] = 'error'
        return rv


class ValidationError(StorefrontError):
    """Invalid input, either caught before the request or reported by the backend (400/422)."""
    def __init__(self, message="Invalid data. Please check the required fields.", field_errors=None, payload=None,
                 status_code=400):
        super().__init__(message, status_code, payload)
        self.field_errors = field_errors or {}

    @classmethod
    def from_form(cls, form, message="Please correct the highlighted fields."):
        """Build from a WTForms form that failed validation."""
        return cls(message, field_errors={name: list(errors) for name, errors in form.errors.items()})

    def to_dict(self):
        rv = super().to_dict()
        if self.field_errors:
            rv['errors'] = self.field_errors
        return rv


class AuthError(StorefrontError):
    """Session missing or expired (401)."""
    def __init__(self, message="Your session has expired. Please log in again.", payload=None):
        super().__init__(message, 401, payload)


class ForbiddenError(StorefrontError):
    """Authenticated but not allowed to perform the action (403)."""
    def __init__(self, message="You are not allowed to access this resource.", payload=None):
        super().__init__(message, 403, payload)


class NotFoundError(StorefrontError):
    """Exception raised when a resource is not found."""
    def __init__(self, message="The requested resource was not found.", payload=None):
        super().__init__(message, 404, payload)


class ConflictError(StorefrontError):
    """Duplicate entry or resource already processed (409)."""
    def __init__(self, message="The record already exists or was already processed.", payload=None):
        super().__init__(message, 409, payload)


class ServerError(StorefrontError):
    """Backend failure (5xx). Retryable errors may succeed if repeated later."""
    def __init__(self, message="A server error occurred. Please try again later.", status_code=500,
                 retryable=False, payload=None):
        super().__init__(message, status_code, payload)
        self.retryable = retryable


class NetworkError(StorefrontError):
    """No response received from the backend."""
    def __init__(self, message="Could not reach the server. Please check your connection and try again.",
                 payload=None):
        super().__init__(message, 503, payload)


RETRYABLE_STATUS_CODES = {429, 502, 503, 504}

ALREADY_PROCESSED_CODES = {'already_processed', 'request_already_processed'}

# The backend answers a repeated decision with 400 and an Arabic message
# ("تم معالجة هذا الطلب مسبقاً", this request was already processed).
ALREADY_PROCESSED_MARKERS = ('already processed', 'مسبقاً', 'مسبقا')


def parse_field_errors(errors):
    """
    Normalize backend validation errors into {field: [messages]}.

    Accepts a list of {field, message} dicts or a dict of field -> message(s).
    Entries without a field are grouped under 'form'.
    """
    field_errors = {}
    if isinstance(errors, list):
        for err in errors:
            if isinstance(err, dict):
                field = err.get('field') or 'form'
                message = err.get('message') or ''
            else:
                field, message = 'form', str(err)
            field_errors.setdefault(field, []).append(message)
    elif isinstance(errors, dict):
        for field, messages in errors.items():
            if isinstance(messages, (list, tuple)):
                field_errors[field] = [str(m) for m in messages]
            else:
                field_errors[field] = [str(messages)]
    return field_errors


def _response_body(response):
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {'data': body}


def error_from_response(response):
    """
    Convert a failed requests.Response into the matching StorefrontError.

    The server-provided message is kept when present, otherwise each class
    falls back to its own user-facing message.
    """
    status = response.status_code
    body = _response_body(response)
    message = body.get('message') or body.get('error')
    if message is not None and not isinstance(message, str):
        message = str(message)
    payload = {k: v for k, v in body.items() if k in ('code', 'error', 'errors', 'data')} or None

    if status in (400, 422):
        field_errors = parse_field_errors(body.get('errors'))
        if message:
            return ValidationError(message, field_errors=field_errors, payload=payload, status_code=status)
        return ValidationError(field_errors=field_errors, payload=payload, status_code=status)
    if status == 401:
        return AuthError(payload=payload)
    if status == 403:
        return ForbiddenError(message, payload) if message else ForbiddenError(payload=payload)
    if status == 404:
        return NotFoundError(message, payload) if message else NotFoundError(payload=payload)
    if status == 409:
        return ConflictError(message, payload) if message else ConflictError(payload=payload)
    if status >= 500 or status == 429:
        retryable = status in RETRYABLE_STATUS_CODES
        if status in (502, 503, 504):
            message = 'The service is currently unavailable. Please try again later.'
        elif status == 429:
            message = 'Too many requests. Please try again later.'
        return ServerError(message or ServerError().message, status_code=status,
                           retryable=retryable, payload=payload)
    return StorefrontError(message or 'An unexpected error occurred', status, payload)


def is_already_processed(error):
    """True when the backend reports that a request was deleted or already decided."""
    if isinstance(error, (NotFoundError, ConflictError)):
        return True
    if not isinstance(error, StorefrontError):
        return False
    if error.status_code >= 500:
        return False
    payload = error.payload or {}
    if payload.get('code') in ALREADY_PROCESSED_CODES:
        return True
    texts = [error.message, payload.get('error')]
    return any(
        marker in text.lower()
        for text in texts if isinstance(text, str)
        for marker in ALREADY_PROCESSED_MARKERS
    )
