import re
from datetime import datetime
from typing import Optional

from errors import ValidationError
from loan import ResourceCondition, ensure_utc


class LoanValidator:
    """Input checks for loan operations. Every failure raises ``ValidationError``."""

    @staticmethod
    def validate_quantity(quantity: int, max_quantity: int) -> int:
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise ValidationError("Quantity must be an integer.")
        if quantity < 1 or quantity > max_quantity:
            raise ValidationError(f"Quantity must be between 1 and {max_quantity}.")
        return quantity

    @staticmethod
    def parse_condition(raw) -> ResourceCondition:
        if isinstance(raw, ResourceCondition):
            return raw
        value = (raw or "").strip().lower() if isinstance(raw, str) else raw
        try:
            return ResourceCondition(value)
        except ValueError:
            allowed = ", ".join(c.value for c in ResourceCondition)
            raise ValidationError(f"Invalid resource condition: {raw!r}. Allowed: {allowed}") from None

    @staticmethod
    def validate_return_date(return_date: datetime, loan_date: datetime, now: datetime) -> datetime:
        return_date = ensure_utc(return_date)
        if return_date < ensure_utc(loan_date):
            raise ValidationError("Return date cannot be earlier than the loan date.")
        if return_date > ensure_utc(now):
            raise ValidationError("Return date cannot be in the future.")
        return return_date

    @staticmethod
    def validate_due_date(due_date: datetime, loan_date: datetime, now: datetime) -> datetime:
        due_date = ensure_utc(due_date)
        if due_date < ensure_utc(loan_date):
            raise ValidationError("Due date cannot be earlier than the loan date.")
        if due_date <= ensure_utc(now):
            raise ValidationError("New due date must be in the future.")
        return due_date


class TextValidator:
    """Observation text handling."""

    @staticmethod
    def sanitize_text(text: Optional[str]) -> str:
        if text is None:
            return ""
        # drop HTML tags, observations are rendered by the UI as plain text
        cleaned = re.sub(r"<[^>]*>", "", text)
        return cleaned.strip()

    @staticmethod
    def append_observation(existing: Optional[str], addition: Optional[str]) -> Optional[str]:
        """Observations only grow: new text goes on a new line after what is there."""
        addition = TextValidator.sanitize_text(addition)
        if not addition:
            return existing
        if not existing:
            return addition
        return f"{existing}\n{addition}"
