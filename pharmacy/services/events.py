"""
Storefront signals.

Other parts of the application subscribe to these instead of being called
directly by the workflows:

    from pharmacy.services.events import wholesale_upgrade_approved

    @wholesale_upgrade_approved.connect
    def on_approved(sender, user_id, request_id):
        ...
"""
from blinker import Namespace

_signals = Namespace()

# sender: WholesaleService; kwargs: user_id, state
wholesale_request_submitted = _signals.signal('wholesale-request-submitted')

# sender: WholesaleAdminService; kwargs: request_id, user_id
wholesale_upgrade_approved = _signals.signal('wholesale-upgrade-approved')

# sender: WholesaleAdminService; kwargs: request_id, user_id, reason
wholesale_request_rejected = _signals.signal('wholesale-request-rejected')

# sender: CartService; kwargs: report
cart_merged = _signals.signal('cart-merged')

# sender: CartService; kwargs: operation
cart_local_fallback = _signals.signal('cart-local-fallback')

# sender: BackendClient; kwargs: kind, method, path, status_code
backend_request_failed = _signals.signal('backend-request-failed')
