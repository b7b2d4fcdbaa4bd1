"""
Custom exceptions for referral engine business logic.

Every error carries a machine-readable ``code`` and a ``kind`` so callers can
tell expected outcomes apart from incidents:

- validation:  bad input or an unusable code, report to the caller
- not_found:   a referenced row does not exist
- conflict:    idempotency/duplicate conflicts, benign under retries
- policy:      fraud decisions, always backed by a persisted fraud event
- operational: the engine itself could not complete (exhaustion, settlement)
"""


class ReferralError(Exception):
    """Base exception for all referral engine errors."""

    kind = 'operational'

    def __init__(self, message: str, code: str = "REFERRAL_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)

    def to_dict(self) -> dict:
        return {'message': self.message, 'code': self.code, 'kind': self.kind}


class NotFoundError(ReferralError):
    """Resource not found."""

    kind = 'not_found'

    def __init__(self, resource: str, identifier=None):
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} with ID {identifier} not found"
        super().__init__(message, f"{resource.upper().replace(' ', '_')}_NOT_FOUND")


class CodeNotFoundError(NotFoundError):
    """Referral code referenced by a tracking record does not exist."""

    def __init__(self, identifier=None):
        super().__init__("Referral code", identifier)


class TrackingNotFoundError(NotFoundError):
    """Tracking (click) record not found."""

    def __init__(self, identifier=None):
        super().__init__("Tracking record", identifier)


class ValidationError(ReferralError):
    """Invalid input data."""

    kind = 'validation'

    def __init__(self, message: str, field: str = None):
        self.field = field
        code = f"INVALID_{field.upper()}" if field else "VALIDATION_ERROR"
        super().__init__(message, code)


class InvalidCodeError(ValidationError):
    """Referral code failed validation (not_found, not_active, expired, max_uses_reached)."""

    def __init__(self, reason: str, code_string: str = None):
        self.reason = reason
        self.code_string = code_string
        super().__init__(f"Invalid referral code: {reason}")
        self.code = "INVALID_CODE"


class LimitExceededError(ReferralError):
    """Resource limit exceeded (e.g., codes issued per day)."""

    kind = 'validation'

    def __init__(self, resource: str, limit: int, current: int):
        self.limit = limit
        self.current = current
        message = f"{resource} limit exceeded. Limit: {limit}, Current: {current}"
        super().__init__(message, f"{resource.upper().replace(' ', '_')}_LIMIT_EXCEEDED")


class InvalidStatusTransitionError(ReferralError):
    """Invalid status transition for a resource."""

    kind = 'validation'

    def __init__(self, resource: str, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        message = f"Cannot change {resource} status from '{from_status}' to '{to_status}'"
        super().__init__(message, "INVALID_STATUS_TRANSITION")


class DuplicateError(ReferralError):
    """Resource already exists."""

    kind = 'conflict'

    def __init__(self, resource: str, identifier=None):
        message = f"{resource} already exists"
        if identifier:
            message = f"{resource} with {identifier} already exists"
        super().__init__(message, "DUPLICATE_ENTRY")


class DuplicateCodeError(DuplicateError):
    """A custom referral code collides with an existing one (case-insensitive)."""

    def __init__(self, code_string: str):
        super().__init__("Referral code", f"code '{code_string}'")
        self.code = "DUPLICATE_CODE"


class AlreadyConvertedError(ReferralError):
    """
    The tracking record already carries a conversion.

    Expected under webhook redelivery; callers should treat it as a no-op.
    """

    kind = 'conflict'

    def __init__(self, tracking_id: int):
        self.tracking_id = tracking_id
        super().__init__(
            f"Conversion already processed for tracking record {tracking_id}",
            "ALREADY_CONVERTED"
        )


class RefereeAlreadyAttributedError(ReferralError):
    """The converting user already belongs to a different referrer."""

    kind = 'conflict'

    def __init__(self, referee_id: str, referrer_id: str):
        self.referee_id = referee_id
        self.referrer_id = referrer_id
        super().__init__(
            f"User {referee_id} is already attributed to referrer {referrer_id}",
            "REFEREE_ALREADY_ATTRIBUTED"
        )


class FraudBlockedError(ReferralError):
    """Conversion blocked by fraud scoring."""

    kind = 'policy'

    def __init__(self, risk_score: int, fraud_event_id: int = None, patterns=None):
        self.risk_score = risk_score
        self.fraud_event_id = fraud_event_id
        self.patterns = list(patterns or [])
        super().__init__(
            f"Conversion blocked due to fraud detection (risk score {risk_score})",
            "FRAUD_BLOCKED"
        )


class CodeGenerationExhaustedError(ReferralError):
    """Unique identifier generation ran out of attempts."""

    def __init__(self, resource: str, attempts: int):
        self.resource = resource
        self.attempts = attempts
        super().__init__(
            f"Failed to generate a unique {resource} after {attempts} attempts",
            "GENERATION_EXHAUSTED"
        )


class SettlementError(ReferralError):
    """
    A post-conversion step failed after the click was spent.

    The conversion itself stays committed; the step can be re-driven with
    ConversionProcessor.resettle().
    """

    def __init__(self, tracking_id: int, step: str, original_error: Exception = None):
        self.tracking_id = tracking_id
        self.step = step
        self.original_error = original_error
        super().__init__(
            f"Settlement step '{step}' failed for tracking record {tracking_id}: {original_error}",
            "SETTLEMENT_FAILED"
        )


class AuthorizationError(ReferralError):
    """Caller not authorized for this operation."""

    kind = 'validation'

    def __init__(self, message: str = "Not authorized for this operation"):
        super().__init__(message, "AUTHORIZATION_ERROR")

