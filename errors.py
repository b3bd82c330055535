"""Error taxonomy shared by the ledger, recurrence and budget code.

``retryable`` tells callers whether repeating the whole operation can succeed
without any change to the input.
"""


class FinanceError(Exception):
    retryable = False


class ValidationError(FinanceError, ValueError):
    pass


class InvalidRuleError(ValidationError):
    pass


class NotFoundError(FinanceError, ValueError):
    pass


class ConflictError(FinanceError):
    retryable = True


class TransientError(FinanceError):
    retryable = True


class AggregationError(FinanceError):
    retryable = True
