"""
Utility modules for the referral engine.
"""
from .logging_config import setup_logging, get_logger
from .errors import (
    ErrorCode,
    error_response,
    error_from_exception,
    bad_request,
    unauthorized,
    forbidden,
    not_found,
    internal_error
)
from .exceptions import (
    ReferralError,
    NotFoundError,
    CodeNotFoundError,
    TrackingNotFoundError,
    ValidationError,
    InvalidCodeError,
    LimitExceededError,
    InvalidStatusTransitionError,
    DuplicateError,
    DuplicateCodeError,
    AlreadyConvertedError,
    RefereeAlreadyAttributedError,
    FraudBlockedError,
    CodeGenerationExhaustedError,
    SettlementError,
    AuthorizationError,
)
from .results import ServiceResult
from .money import as_decimal, quantize_money, parse_amount
