# Sync/validation.py
# Description: Validation rules for transcript records, shared by the sync service, the mutation coordinator
#              and the consistency checker.
#
# Imports
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Tuple
#
# Local Imports
from .models import Severity, TranscriptRecord, year_from_month
#
#######################################################################################################################
#
# Functions:

MONTH_PATTERN = re.compile(r"^\d{4}-\d{2}$")
MAX_REASONABLE_COUNT = 10000


@dataclass(frozen=True)
class ValidationRule:
    name: str
    field: str
    validator: Callable[[Any, TranscriptRecord], bool]
    message: str
    severity: Severity
    suggested_fix: str = "Fix the validation error"


def _is_valid_count(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def _is_valid_date(value: Any) -> bool:
    return isinstance(value, datetime)


def _updated_not_before_created(value: Any, record: TranscriptRecord) -> bool:
    if not _is_valid_date(value):
        return False
    if not _is_valid_date(record.created_at):
        return True
    return value >= record.created_at


def default_validation_rules() -> List[ValidationRule]:
    return [
        ValidationRule(
            name="clientNameRequired", field="client_name",
            validator=lambda value, _r: isinstance(value, str) and len(value.strip()) > 0,
            message="Client name is required and cannot be empty",
            severity=Severity.CRITICAL, suggested_fix="Provide a valid client name",
        ),
        ValidationRule(
            name="monthFormat", field="month",
            validator=lambda value, _r: isinstance(value, str) and bool(MONTH_PATTERN.match(value)),
            message="Month must be in YYYY-MM format",
            severity=Severity.CRITICAL, suggested_fix="Use YYYY-MM format (e.g., 2024-01)",
        ),
        ValidationRule(
            name="transcriptCountValid", field="transcript_count",
            validator=lambda value, _r: _is_valid_count(value),
            message="Transcript count must be a non-negative integer",
            severity=Severity.CRITICAL, suggested_fix="Provide a non-negative integer value",
        ),
        ValidationRule(
            name="yearConsistency", field="year",
            validator=lambda value, r: isinstance(value, int) and value == year_from_month(r.month),
            message="Year field must match the year in the month field",
            severity=Severity.HIGH, suggested_fix="Update year to match month",
        ),
        ValidationRule(
            name="dateValidation", field="created_at",
            validator=lambda value, _r: _is_valid_date(value),
            message="Created date must be a valid date",
            severity=Severity.MEDIUM, suggested_fix="Set a valid creation date",
        ),
        ValidationRule(
            name="updatedAtValidation", field="updated_at",
            validator=_updated_not_before_created,
            message="Updated date must be a valid date and not before created date",
            severity=Severity.MEDIUM, suggested_fix="Set updated date on or after the created date",
        ),
        ValidationRule(
            name="reasonableTranscriptCount", field="transcript_count",
            validator=lambda value, _r: isinstance(value, (int, float)) and value <= MAX_REASONABLE_COUNT,
            message=f"Transcript count seems unusually high (>{MAX_REASONABLE_COUNT:,})",
            severity=Severity.LOW, suggested_fix="Verify if this count is correct",
        ),
    ]


def validate_record(record: TranscriptRecord) -> Tuple[bool, List[str]]:
    """Structural validation applied before a record is pulled or pushed."""
    errors = []
    if not isinstance(record.client_name, str) or not record.client_name.strip():
        errors.append("Client name is required")
    if not isinstance(record.month, str) or not MONTH_PATTERN.match(record.month):
        errors.append("Month must be in YYYY-MM format")
    if not _is_valid_count(record.transcript_count):
        errors.append("Transcript count must be a non-negative number")
    return len(errors) == 0, errors


def validate_payload(payload: Dict[str, Any], partial: bool = False) -> List[str]:
    """Validates a create (full) or update (partial) payload. Returns a list of error strings."""
    errors = []
    if not partial or "client_name" in payload:
        value = payload.get("client_name")
        if not isinstance(value, str) or not value.strip():
            errors.append("Client name is required")
    if not partial or "month" in payload:
        value = payload.get("month")
        if not isinstance(value, str) or not MONTH_PATTERN.match(value):
            errors.append("Month must be in YYYY-MM format")
    if not partial or "transcript_count" in payload:
        if not _is_valid_count(payload.get("transcript_count")):
            errors.append("Transcript count must be a non-negative number")
    return errors

#
# End of validation.py
#######################################################################################################################
