"""
Error taxonomy for the question-to-query pipeline.

Every error carries a payload dict {'error': code, 'message': ..., 'details': ...}
so callers can log or serialise it without inspecting the exception type.
"""

from __future__ import annotations

from typing import Any, Dict


class ChargeQAError(Exception):
    code = 'unknown_error'

    def __init__(self, message: str, **details: Any):
        self.message = message
        self.details: Dict[str, Any] = details
        super().__init__({'error': self.code, 'message': message, 'details': details})

    @property
    def payload(self) -> Dict[str, Any]:
        return {'error': self.code, 'message': self.message, 'details': dict(self.details)}


class NoSourceResolved(ChargeQAError):
    code = 'no_source_resolved'


class NoFieldResolved(ChargeQAError):
    code = 'no_field_resolved'


class StoreExecutionFailed(ChargeQAError):
    code = 'store_execution_failed'


class ModelUnavailable(ChargeQAError):
    code = 'model_unavailable'


class UnknownError(ChargeQAError):
    code = 'unknown_error'


class FormulaNotApplicable(ChargeQAError):
    """Raised by formula builders when the question cannot be expressed by a fixed template.

    Never surfaced to the user: the query system routes it to the model fallback.
    """

    code = 'formula_not_applicable'
