from __future__ import annotations

from datetime import date
from typing import Optional


class ShiftLedgerError(Exception):
    code = "SHIFT_LEDGER_ERROR"

    def __init__(self, message: str, shift_date: Optional[date] = None):
        self.shift_date = shift_date
        super().__init__(message)


class MissingMapping(ShiftLedgerError):
    code = "MISSING_MAPPING"

    def __init__(self, channel: str, sku: Optional[str], shift_date: Optional[date] = None):
        self.channel = channel
        self.sku = sku
        super().__init__(f"no recipe mapping for {channel}:{sku}", shift_date)


class MissingDeclaration(ShiftLedgerError):
    code = "MISSING_DECLARATION"


class ExternalSourceFailure(ShiftLedgerError):
    code = "EXTERNAL_SOURCE_FAILURE"

    def __init__(self, source: str, message: str, shift_date: Optional[date] = None):
        self.source = source
        super().__init__(f"{source}: {message}", shift_date)


class InvariantViolation(ShiftLedgerError):
    code = "INVARIANT_VIOLATION"


class DerivationFailed(ShiftLedgerError):
    code = "DERIVATION_FAILED"


def error_payload(exc: BaseException) -> dict:
    return {
        "code": getattr(exc, "code", type(exc).__name__.upper()),
        "message": str(exc),
    }
