"""
Explicit success/error results for service entry points.

Expected outcomes (invalid code, duplicate delivery, fraud block) come back
as values instead of exceptions so every caller has to look at them:

    result = ConversionProcessor().process_conversion(tracking_id, data)
    if result.ok:
        ...
    elif result.is_benign:
        pass  # duplicate webhook delivery
    else:
        return error_from_exception(result.error)
"""
from dataclasses import dataclass
from typing import Any, Optional

from .exceptions import ReferralError, AlreadyConvertedError


@dataclass
class ServiceResult:
    """Either a value or a ReferralError, never both."""
    value: Any = None
    error: Optional[ReferralError] = None

    @classmethod
    def success(cls, value: Any = None) -> 'ServiceResult':
        return cls(value=value)

    @classmethod
    def failure(cls, error: ReferralError) -> 'ServiceResult':
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def error_kind(self) -> Optional[str]:
        return self.error.kind if self.error else None

    @property
    def is_benign(self) -> bool:
        """True for duplicate deliveries that callers should swallow."""
        return isinstance(self.error, AlreadyConvertedError)

    def unwrap(self) -> Any:
        """Return the value or raise the carried error."""
        if self.error is not None:
            raise self.error
        return self.value
