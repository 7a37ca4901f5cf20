"""Domain error codes for bookings, pricing and ticket issuance."""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Domain error codes."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    TICKET_TYPE_NOT_FOUND = "TICKET_TYPE_NOT_FOUND"
    REGISTRATION_NOT_FOUND = "REGISTRATION_NOT_FOUND"
    COUPON_NOT_FOUND = "COUPON_NOT_FOUND"
    COUPON_EXPIRED = "COUPON_EXPIRED"
    COUPON_EXHAUSTED = "COUPON_EXHAUSTED"
    COUPON_USER_LIMIT = "COUPON_USER_LIMIT"
    COUPON_MIN_ORDER = "COUPON_MIN_ORDER"
    COUPON_NOT_APPLICABLE = "COUPON_NOT_APPLICABLE"
    NOT_APPROVED = "NOT_APPROVED"
    INVALID_STATUS_TRANSITION = "INVALID_STATUS_TRANSITION"
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"
    PAYMENT_NOT_REQUIRED = "PAYMENT_NOT_REQUIRED"
    CHECKOUT_IN_PROGRESS = "CHECKOUT_IN_PROGRESS"
    DUPLICATE_PAYMENT = "DUPLICATE_PAYMENT"
    EMS_REGISTRATION_PENDING = "EMS_REGISTRATION_PENDING"
    IN_USE = "IN_USE"


class DomainError(Exception):
    """Base domain error with code and user-safe message."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class ValidationError(DomainError):
    """Raised when input shape or bounds are invalid."""

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(ErrorCode.VALIDATION_ERROR, message, details)


class TicketTypeNotFoundError(DomainError):
    def __init__(self, ticket_type_id: str) -> None:
        super().__init__(
            ErrorCode.TICKET_TYPE_NOT_FOUND,
            "Ticket type not found",
            {"ticket_type_id": ticket_type_id},
        )
        self.ticket_type_id = ticket_type_id


class RegistrationNotFoundError(DomainError):
    def __init__(self, registration_id: str) -> None:
        super().__init__(
            ErrorCode.REGISTRATION_NOT_FOUND,
            "Registration not found",
            {"registration_id": registration_id},
        )
        self.registration_id = registration_id


# ----------------------------
# Coupons
# ----------------------------
class CouponError(DomainError):
    """Base class for coupon rule failures."""


class CouponNotFoundError(CouponError):
    def __init__(self, code: str) -> None:
        super().__init__(
            ErrorCode.COUPON_NOT_FOUND,
            "Invalid coupon code",
            {"code": code},
        )


class CouponExpiredError(CouponError):
    def __init__(self, code: str, not_yet_valid: bool = False) -> None:
        message = (
            "This coupon is not yet valid" if not_yet_valid
            else "This coupon has expired"
        )
        super().__init__(ErrorCode.COUPON_EXPIRED, message, {"code": code})


class CouponExhaustedError(CouponError):
    def __init__(self, code: str, max_uses: Optional[int] = None) -> None:
        super().__init__(
            ErrorCode.COUPON_EXHAUSTED,
            "This coupon has reached its usage limit",
            {"code": code, "max_uses": max_uses},
        )


class CouponUserLimitError(CouponExhaustedError):
    def __init__(self, code: str, max_uses_per_user: int) -> None:
        DomainError.__init__(
            self,
            ErrorCode.COUPON_USER_LIMIT,
            "You have already used this coupon the maximum number of times",
            {"code": code, "max_uses_per_user": max_uses_per_user},
        )


class CouponMinOrderError(CouponError):
    def __init__(self, code: str, min_order_amount: int) -> None:
        super().__init__(
            ErrorCode.COUPON_MIN_ORDER,
            "Order amount is below the minimum required for this coupon",
            {"code": code, "min_order_amount": min_order_amount},
        )


class CouponNotApplicableError(CouponError):
    def __init__(self, code: str, is_ems_client: bool) -> None:
        message = (
            "This coupon is not valid for EMS customers" if is_ems_client
            else "This coupon is only valid for EMS customers"
        )
        super().__init__(
            ErrorCode.COUPON_NOT_APPLICABLE, message, {"code": code}
        )


# ----------------------------
# Registrations / issuance
# ----------------------------
class NotApprovedError(DomainError):
    def __init__(self, registration_id: str, status: str) -> None:
        super().__init__(
            ErrorCode.NOT_APPROVED,
            "Registration is not approved or paid",
            {"registration_id": registration_id, "status": status},
        )


class InvalidStatusTransitionError(DomainError):
    def __init__(self, registration_id: str, status: str,
                 target: str) -> None:
        super().__init__(
            ErrorCode.INVALID_STATUS_TRANSITION,
            f"Cannot move registration from {status} to {target}",
            {"registration_id": registration_id, "status": status,
             "target": target},
        )


class InsufficientStockError(DomainError):
    def __init__(self, ticket_type_id: str, requested: int,
                 available: int, name: str = "") -> None:
        label = name or ticket_type_id
        super().__init__(
            ErrorCode.INSUFFICIENT_STOCK,
            f"Insufficient stock for {label}. Available: {available}",
            {"ticket_type_id": ticket_type_id, "requested": requested,
             "available": available},
        )
        self.ticket_type_id = ticket_type_id
        self.requested = requested
        self.available = available


class PaymentNotRequiredError(DomainError):
    def __init__(self, registration_id: str) -> None:
        super().__init__(
            ErrorCode.PAYMENT_NOT_REQUIRED,
            "Registration does not require payment",
            {"registration_id": registration_id},
        )


class CheckoutInProgressError(DomainError):
    def __init__(self, registration_id: str, psid: str) -> None:
        super().__init__(
            ErrorCode.CHECKOUT_IN_PROGRESS,
            "A payment session is already open for this registration",
            {"registration_id": registration_id,
             "payment_session_id": psid},
        )


class DuplicatePaymentError(DomainError):
    """A second successful payment for an already paid registration."""

    def __init__(self, registration_id: str, psid: str,
                 paid_with: Optional[str]) -> None:
        super().__init__(
            ErrorCode.DUPLICATE_PAYMENT,
            f"Registration was already paid with {paid_with}",
            {"registration_id": registration_id,
             "payment_session_id": psid, "paid_with": paid_with},
        )


class EmsRegistrationPendingError(DomainError):
    def __init__(self, email: str, registration_id: str) -> None:
        super().__init__(
            ErrorCode.EMS_REGISTRATION_PENDING,
            "You already have a pending EMS registration. "
            "Please wait for approval or contact support.",
            {"email": email, "registration_id": registration_id},
        )


class InUseError(DomainError):
    def __init__(self, kind: str, ident: str) -> None:
        super().__init__(
            ErrorCode.IN_USE,
            f"Cannot delete a {kind} that has been used. Disable it instead.",
            {"kind": kind, "id": ident},
        )


HTTP_STATUS = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.TICKET_TYPE_NOT_FOUND: 404,
    ErrorCode.REGISTRATION_NOT_FOUND: 404,
    ErrorCode.COUPON_NOT_FOUND: 400,
    ErrorCode.COUPON_EXPIRED: 400,
    ErrorCode.COUPON_EXHAUSTED: 400,
    ErrorCode.COUPON_USER_LIMIT: 400,
    ErrorCode.COUPON_MIN_ORDER: 400,
    ErrorCode.COUPON_NOT_APPLICABLE: 400,
    ErrorCode.NOT_APPROVED: 409,
    ErrorCode.INVALID_STATUS_TRANSITION: 409,
    ErrorCode.INSUFFICIENT_STOCK: 409,
    ErrorCode.PAYMENT_NOT_REQUIRED: 409,
    ErrorCode.CHECKOUT_IN_PROGRESS: 409,
    ErrorCode.DUPLICATE_PAYMENT: 409,
    ErrorCode.EMS_REGISTRATION_PENDING: 409,
    ErrorCode.IN_USE: 409,
}


def http_status(err: DomainError) -> int:
    return HTTP_STATUS.get(err.code, 400)
