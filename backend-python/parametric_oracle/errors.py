"""
Exception hierarchy for oracle evaluation and payout dispatch.

Every error carries a machine-readable ``code`` so entry points can turn it
into a response payload without string matching.

    OracleError
    ├── NotFoundError
    ├── VerificationRequired
    ├── AdapterError
    │   ├── AdapterTimeout
    │   ├── AdapterUnavailable
    │   ├── InvalidQuery
    │   └── PartialData          (carries the partial Reading)
    ├── EvaluationError
    │   ├── SourceConflict
    │   ├── InvalidState
    │   │   └── InvalidTransition
    │   └── NoActiveConditions
    └── DispatchError
        ├── AlreadyPaidError
        ├── TransferFailed
        ├── TransferAmbiguous
        └── ReconciliationRequired
"""

from __future__ import annotations

from typing import Any, Optional


class OracleError(Exception):
    code = "ORACLE_ERROR"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"code": self.code, "error": self.message}
        if self.details:
            out["details"] = self.details
        return out


class NotFoundError(OracleError):
    code = "NOT_FOUND"


class VerificationRequired(OracleError):
    """Claim holder has not passed identity verification."""
    code = "VERIFICATION_REQUIRED"


# ============================================================================
# Adapter errors
# ============================================================================

class AdapterError(OracleError):
    code = "ADAPTER_ERROR"


class AdapterTimeout(AdapterError):
    code = "ADAPTER_TIMEOUT"


class AdapterUnavailable(AdapterError):
    code = "ADAPTER_UNAVAILABLE"


class InvalidQuery(AdapterError):
    code = "ADAPTER_INVALID_QUERY"


class PartialData(AdapterError):
    """Provider answered only partly; ``reading`` holds what did arrive."""
    code = "ADAPTER_PARTIAL_DATA"

    def __init__(self, message: str, reading, **details: Any):
        super().__init__(message, **details)
        self.reading = reading


# ============================================================================
# Evaluation errors
# ============================================================================

class EvaluationError(OracleError):
    code = "EVALUATION_ERROR"


class SourceConflict(EvaluationError):
    code = "SOURCE_CONFLICT"


class InvalidState(EvaluationError):
    code = "INVALID_STATE"


class InvalidTransition(InvalidState):
    code = "INVALID_TRANSITION"

    def __init__(self, entity: str, current: str, target: str,
                 entity_id: Optional[str] = None):
        super().__init__(
            f"{entity} cannot move from '{current}' to '{target}'",
            entity_id=entity_id, current=current, target=target,
        )


class NoActiveConditions(EvaluationError):
    code = "NO_ACTIVE_CONDITIONS"


# ============================================================================
# Dispatch errors
# ============================================================================

class DispatchError(OracleError):
    code = "DISPATCH_ERROR"


class AlreadyPaidError(DispatchError):
    code = "ALREADY_PAID"


class TransferFailed(DispatchError):
    """The transfer was definitely not executed; safe to retry later."""
    code = "TRANSFER_FAILED"


class TransferAmbiguous(DispatchError):
    """Outcome unknown (e.g. timeout after submission); must be reconciled."""
    code = "TRANSFER_AMBIGUOUS"


class ReconciliationRequired(DispatchError):
    code = "RECONCILIATION_REQUIRED"
