"""Field-format policy applied before a submission leaves the form."""

from __future__ import annotations

import re
from typing import Optional

from .errors import ValidationError
from .models import RecordVariant, SubmissionForm, ValidatedSubmission

MAX_TEXT_LENGTH = 1000
MAX_TEAM_LENGTH = 100
MAX_ACTION_LENGTH = 50

_ACCOUNT_RE = re.compile(r"^[A-Z]{3}[0-9]{3}$")
_NON_DIGIT_RE = re.compile(r"\D")
_ANGLE_RE = re.compile(r"[<>]")


def validate_account_number(value: Optional[str]) -> str:
    """Three uppercase letters followed by three digits, e.g. ABC123."""
    if not value or not value.strip():
        raise ValidationError("account_number", "Account number is required")
    upper = value.strip().upper()
    if not _ACCOUNT_RE.match(upper):
        raise ValidationError(
            "account_number",
            "Account number must be 3 letters followed by 3 numbers (e.g., ABC123)",
        )
    return upper


def _eight_digits(value: Optional[str], field: str, label: str) -> int:
    if value is None or not str(value).strip():
        raise ValidationError(field, f"{label} is required")
    digits = _NON_DIGIT_RE.sub("", str(value).strip())
    if len(digits) != 8:
        raise ValidationError(field, f"{label} must be exactly 8 digits")
    return int(digits)


def validate_invoice_number(value: Optional[str]) -> int:
    return _eight_digits(value, "invoice_number", "Invoice number")


def validate_returns_number(value: Optional[str]) -> int:
    return _eight_digits(value, "returns_number", "Returns number")


def sanitize_text(text: Optional[str], max_length: int = MAX_TEXT_LENGTH, *, field: str = "reason") -> str:
    """Strip angle brackets and surrounding whitespace; reject over-long text."""
    if text is None:
        return ""
    if len(text) > max_length:
        raise ValidationError(field, f"Text must be less than {max_length} characters")
    return _ANGLE_RE.sub("", text).strip()


def validate_submission(form: SubmissionForm, variant: RecordVariant) -> ValidatedSubmission:
    returns_number: Optional[int] = None
    if variant.requires_returns_number:
        returns_number = validate_returns_number(form.returns_number)
    account = validate_account_number(form.account_number)
    invoice = validate_invoice_number(form.invoice_number)
    reason = sanitize_text(form.reason) if form.reason else ""
    return ValidatedSubmission(
        invoice_number=invoice,
        account_number=account,
        returns_number=returns_number,
        reason=reason,
    )
