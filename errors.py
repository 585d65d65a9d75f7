"""
Exceptions raised by the ordering services.

Each error carries the HTTP status the API answers with, so route handlers can
let them propagate and the application-level handler renders them.
"""

from typing import Iterable, Optional


class CoopError(Exception):
    """Base exception for all cooperative ordering errors."""

    status_code = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ConfigurationError(CoopError):
    """Raised at startup when required environment values are missing."""

    status_code = 500

    def __init__(self, missing_keys: Iterable[str]):
        self.missing_keys = list(missing_keys)
        super().__init__(f"Missing environment variables: {', '.join(self.missing_keys)}")


class NotFound(CoopError):
    status_code = 404

    def __init__(self, kind: str, doc_id: str):
        self.kind = kind
        self.doc_id = doc_id
        super().__init__(f"{kind} not found: {doc_id}")


class InvalidTransition(CoopError):
    """Raised when a distribution status change breaks planned -> open -> finished."""

    status_code = 409

    def __init__(self, distribution_id: str, current: Optional[str], target: str):
        self.distribution_id = distribution_id
        self.current = current
        self.target = target
        super().__init__(
            f"Distribution {distribution_id} cannot go from '{current}' to '{target}'"
        )


class NoOpenDistribution(CoopError):
    status_code = 409

    def __init__(self):
        super().__init__("No sale is currently open")


class EmptyCart(CoopError):
    def __init__(self):
        super().__init__("Cart is empty")


class OfferLimitExceeded(CoopError):
    status_code = 409

    def __init__(self, offer_item_id: str, limit_kind: str, limit: int, requested: int):
        self.offer_item_id = offer_item_id
        self.limit_kind = limit_kind
        self.limit = limit
        self.requested = requested
        super().__init__(
            f"Offer {offer_item_id} allows {limit} ({limit_kind}), {requested} requested"
        )


class InviteInvalid(CoopError):
    def __init__(self):
        super().__init__("Invite is invalid or already used")


class InviteEmailMismatch(CoopError):
    def __init__(self):
        super().__init__("This invite is bound to another email")


class EmailAlreadyRegistered(CoopError):
    def __init__(self, email: str):
        self.email = email
        super().__init__("Email already registered")


class AuthenticationFailed(CoopError):
    status_code = 401


class PermissionDenied(CoopError):
    status_code = 403

    def __init__(self, message: str = "Admin only"):
        super().__init__(message)


class OfferUnavailable(CoopError):
    """Raised when a cart line matches no offer item of the open sale."""

    status_code = 409

    def __init__(self, product_id: str, variant_id: str, sale_date_key: Optional[str]):
        self.product_id = product_id
        self.variant_id = variant_id
        self.sale_date_key = sale_date_key
        super().__init__(
            f"Product {product_id} ({variant_id}) is not offered on {sale_date_key or 'any date'}"
        )
