"""
Typed exception hierarchy for the fee kernel.

Every error has a typed class, a ``code`` class attribute (machine-readable,
API-safe) and carries its context as attributes rather than only inside the
message string, so callers catch by type and log structured data.

Only programmer and configuration errors are raised.  Malformed display
input degrades to empty values, and business-rule violations are returned
as ``errors`` / ``warnings`` lists by the validators.

Hierarchy::

    FeeKernelError (base)
    |
    +-- FeeConfigurationError
    |   +-- UnknownReferenceAmountError
    |   +-- UnknownApplicationRuleError
    |
    +-- FeeRequestError
    |   +-- MissingSegmentError
    |
    +-- FeeResponseError
        +-- FeeResponseValidationError
        +-- NegativeSourceAmountError

Codes::

    Category       | Code                            | When raised
    ---------------|---------------------------------|----------------------------------
    Configuration  | UNKNOWN_REFERENCE_AMOUNT        | Rule references an unknown base
                   | UNKNOWN_APPLICATION_RULE        | Rule uses an unknown model
    ---------------|---------------------------------|----------------------------------
    Request        | MISSING_SEGMENT_ID              | Fee engine request lacks segment
    ---------------|---------------------------------|----------------------------------
    Response       | FEE_RESPONSE_VALIDATION_FAILED  | Fee service response rejected
                   | NEGATIVE_SOURCE_AMOUNT          | Rescaling drove a source below 0
"""

from __future__ import annotations


class FeeKernelError(Exception):
    """
    Base exception for all fee kernel errors.

    All subclasses must have a ``code`` class attribute.
    """

    code: str = "FEE_KERNEL_ERROR"


# Configuration exceptions


class FeeConfigurationError(FeeKernelError):
    """Fee package or engine configuration is invalid."""

    code: str = "FEE_CONFIGURATION_ERROR"


class UnknownReferenceAmountError(FeeConfigurationError):
    """A package rule references an amount base the engines do not know."""

    code: str = "UNKNOWN_REFERENCE_AMOUNT"

    def __init__(self, reference_amount: str, fee_id: str | None = None):
        self.reference_amount = reference_amount
        self.fee_id = fee_id
        super().__init__(f"Unknown reference amount type: {reference_amount}")


class UnknownApplicationRuleError(FeeConfigurationError):
    """A package rule uses a calculation model the engines do not know."""

    code: str = "UNKNOWN_APPLICATION_RULE"

    def __init__(self, application_rule: str, fee_id: str | None = None):
        self.application_rule = application_rule
        self.fee_id = fee_id
        super().__init__(f"Unknown application rule: {application_rule}")


# Request exceptions


class FeeRequestError(FeeKernelError):
    """Base exception for outbound fee calculation request errors."""

    code: str = "FEE_REQUEST_ERROR"


class MissingSegmentError(FeeRequestError):
    """The fee engine requires a segment to select the fee package."""

    code: str = "MISSING_SEGMENT_ID"

    def __init__(self, ledger_id: str | None = None):
        self.ledger_id = ledger_id
        super().__init__("Segment ID is required for fee calculation")


# Response exceptions


class FeeResponseError(FeeKernelError):
    """Base exception for fee service response errors."""

    code: str = "FEE_RESPONSE_ERROR"


class FeeResponseValidationError(FeeResponseError):
    """A fee service response failed reconciliation against its request."""

    code: str = "FEE_RESPONSE_VALIDATION_FAILED"

    def __init__(self, errors: list[str] | tuple[str, ...], stage: str = "transaction"):
        self.errors = list(errors)
        self.stage = stage
        label = "Fee" if stage == "fee" else "Transaction"
        super().__init__(f"{label} validation failed: {', '.join(self.errors)}")


class NegativeSourceAmountError(FeeResponseError):
    """Rescaling source legs after fee filtering produced a negative amount."""

    code: str = "NEGATIVE_SOURCE_AMOUNT"

    def __init__(self, account_alias: str, current_amount: str, new_amount: str):
        self.account_alias = account_alias
        self.current_amount = current_amount
        self.new_amount = new_amount
        super().__init__(
            f"Source account {account_alias} would have negative amount"
        )
