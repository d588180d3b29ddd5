from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Any, Mapping, Type, TypeVar

import pydantic
from pydantic import BaseModel

from ledger_engine.errors import ValidationError
from ledger_engine.models import (
    DEFAULT_CATALOG,
    CategoryCatalog,
    Frequency,
    TransactionType,
)

MAX_DESCRIPTION_LENGTH = 255
MAX_GOAL_NAME_LENGTH = 50
# Stored amounts keep every digit; sums are exact within the decimal context.
MAX_AMOUNT_DIGITS = 28

PayloadT = TypeVar("PayloadT", bound=BaseModel)


def coerce_payload(model: Type[PayloadT], data: PayloadT | Mapping[str, Any]) -> PayloadT:
    """Build ``model`` from a mapping, reporting every field error at once."""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as exc:
        messages = []
        for error in exc.errors():
            location = ".".join(str(part) for part in error["loc"]) or "payload"
            messages.append(f"{location}: {error['msg']}")
        raise ValidationError(messages) from exc


def _check_digits(value: Decimal | None, errors: list[str]) -> None:
    if value is None or not value.is_finite():
        return
    if len(value.as_tuple().digits) > MAX_AMOUNT_DIGITS:
        errors.append(
            f"Amounts are limited to {MAX_AMOUNT_DIGITS} significant digits."
        )


def _check_description(value: str | None, errors: list[str]) -> str:
    cleaned = (value or "").strip()
    if len(cleaned) > MAX_DESCRIPTION_LENGTH:
        errors.append(
            f"Description cannot exceed {MAX_DESCRIPTION_LENGTH} characters."
        )
    return cleaned


def _check_type(value: str, errors: list[str]) -> TransactionType | None:
    try:
        return TransactionType.validate(value)
    except ValueError as exc:
        errors.append(str(exc))
        return None


def _check_category(
    value: str | None,
    txn_type: TransactionType | None,
    catalog: CategoryCatalog,
    errors: list[str],
) -> str | None:
    if value is None or not value.strip():
        return None
    if txn_type is None:
        return value.strip()
    try:
        return catalog.validate(value, txn_type)
    except ValueError as exc:
        errors.append(str(exc))
        return None


class TransactionPayload(BaseModel):
    type: str = TransactionType.EXPENSE.value
    amount: Decimal
    description: str | None = None
    category: str | None = None
    date: dt.date

    @classmethod
    def validate_payload(
        cls,
        payload: "TransactionPayload",
        catalog: CategoryCatalog = DEFAULT_CATALOG,
    ) -> "TransactionPayload":
        errors: list[str] = []
        txn_type = _check_type(payload.type, errors)
        if payload.amount <= 0:
            errors.append("Amount must be greater than zero.")
        _check_digits(payload.amount, errors)
        description = _check_description(payload.description, errors)
        category = _check_category(payload.category, txn_type, catalog, errors)
        if errors:
            raise ValidationError(errors)
        payload.type = txn_type.value
        payload.description = description
        payload.category = category
        return payload


class TransactionUpdatePayload(BaseModel):
    description: str | None = None
    amount: Decimal | None = None
    category: str | None = None
    date: dt.date | None = None

    @classmethod
    def validate_payload(
        cls,
        payload: "TransactionUpdatePayload",
        txn_type: TransactionType,
        catalog: CategoryCatalog = DEFAULT_CATALOG,
    ) -> dict[str, Any]:
        """Return only the fields the caller supplied, cleaned."""
        errors: list[str] = []
        changes = payload.model_dump(exclude_unset=True)
        if "amount" in changes and (changes["amount"] is None or changes["amount"] <= 0):
            errors.append("Amount must be greater than zero.")
        _check_digits(changes.get("amount"), errors)
        if "date" in changes and changes["date"] is None:
            errors.append("Date cannot be empty.")
        if "description" in changes:
            changes["description"] = _check_description(changes["description"], errors)
        if "category" in changes:
            changes["category"] = _check_category(
                changes["category"], txn_type, catalog, errors
            )
        if errors:
            raise ValidationError(errors)
        return changes


class BudgetPayload(BaseModel):
    category: str
    limit: Decimal

    @classmethod
    def validate_payload(
        cls,
        payload: "BudgetPayload",
        catalog: CategoryCatalog = DEFAULT_CATALOG,
    ) -> "BudgetPayload":
        errors: list[str] = []
        if payload.limit <= 0:
            errors.append("Budget limit must be greater than zero.")
        _check_digits(payload.limit, errors)
        if not payload.category.strip():
            errors.append("Budget category required.")
        else:
            category = _check_category(
                payload.category, TransactionType.EXPENSE, catalog, errors
            )
            if category:
                payload.category = category
        if errors:
            raise ValidationError(errors)
        return payload


class BudgetUpdatePayload(BaseModel):
    category: str | None = None
    limit: Decimal | None = None

    @classmethod
    def validate_payload(
        cls,
        payload: "BudgetUpdatePayload",
        catalog: CategoryCatalog = DEFAULT_CATALOG,
    ) -> dict[str, Any]:
        errors: list[str] = []
        changes = payload.model_dump(exclude_unset=True)
        if "limit" in changes and (changes["limit"] is None or changes["limit"] <= 0):
            errors.append("Budget limit must be greater than zero.")
        _check_digits(changes.get("limit"), errors)
        if "category" in changes:
            category = _check_category(
                changes["category"], TransactionType.EXPENSE, catalog, errors
            )
            if category is None and not errors:
                errors.append("Budget category required.")
            changes["category"] = category
        if errors:
            raise ValidationError(errors)
        return changes


class RecurrencePayload(BaseModel):
    description: str
    amount: Decimal
    category: str | None = None
    type: str = TransactionType.EXPENSE.value
    frequency: str = Frequency.MONTHLY.value
    start_date: dt.date

    @classmethod
    def validate_payload(
        cls,
        payload: "RecurrencePayload",
        catalog: CategoryCatalog = DEFAULT_CATALOG,
    ) -> "RecurrencePayload":
        errors: list[str] = []
        if not payload.description.strip():
            errors.append("Description required.")
        description = _check_description(payload.description, errors)
        if payload.amount <= 0:
            errors.append("Amount must be greater than zero.")
        _check_digits(payload.amount, errors)
        txn_type = _check_type(payload.type, errors)
        try:
            frequency = Frequency.validate(payload.frequency)
        except ValueError as exc:
            errors.append(str(exc))
            frequency = None
        category = _check_category(payload.category, txn_type, catalog, errors)
        if errors:
            raise ValidationError(errors)
        payload.description = description
        payload.type = txn_type.value
        payload.frequency = frequency.value
        payload.category = category
        return payload


class RecurrenceUpdatePayload(BaseModel):
    description: str | None = None
    amount: Decimal | None = None
    category: str | None = None
    type: str | None = None
    frequency: str | None = None
    start_date: dt.date | None = None
    is_active: bool | None = None

    @classmethod
    def validate_payload(
        cls,
        payload: "RecurrenceUpdatePayload",
        current_type: TransactionType,
        catalog: CategoryCatalog = DEFAULT_CATALOG,
    ) -> dict[str, Any]:
        errors: list[str] = []
        changes = {
            key: value
            for key, value in payload.model_dump(exclude_unset=True).items()
            if value is not None or key == "category"
        }
        if "description" in changes:
            if not changes["description"].strip():
                errors.append("Description required.")
            changes["description"] = _check_description(changes["description"], errors)
        if "amount" in changes and changes["amount"] <= 0:
            errors.append("Amount must be greater than zero.")
        _check_digits(changes.get("amount"), errors)
        txn_type = current_type
        if "type" in changes:
            txn_type = _check_type(changes["type"], errors)
            if txn_type is not None:
                changes["type"] = txn_type.value
        if "frequency" in changes:
            try:
                changes["frequency"] = Frequency.validate(changes["frequency"]).value
            except ValueError as exc:
                errors.append(str(exc))
        if "category" in changes:
            changes["category"] = _check_category(
                changes["category"], txn_type, catalog, errors
            )
        if errors:
            raise ValidationError(errors)
        return changes


def _goal_rules(
    name: str | None,
    target_amount: Decimal | None,
    saved_amount: Decimal | None,
    target_date: dt.date | None,
    today: dt.date | None,
) -> list[str]:
    errors: list[str] = []
    if name is not None:
        if not name.strip():
            errors.append("Goal name is required.")
        elif len(name.strip()) > MAX_GOAL_NAME_LENGTH:
            errors.append(
                f"Goal name cannot exceed {MAX_GOAL_NAME_LENGTH} characters."
            )
    if target_amount is not None and target_amount <= 0:
        errors.append("Target amount must be greater than zero.")
    if saved_amount is not None and saved_amount < 0:
        errors.append("Saved amount cannot be negative.")
    if (
        target_amount is not None
        and saved_amount is not None
        and target_amount > 0
        and saved_amount > target_amount
    ):
        errors.append("Saved amount cannot exceed the target amount.")
    if today is not None and target_date is not None and target_date < today:
        errors.append("Target date cannot be in the past.")
    _check_digits(target_amount, errors)
    _check_digits(saved_amount, errors)
    return errors


class SavingsGoalPayload(BaseModel):
    name: str
    target_amount: Decimal
    saved_amount: Decimal = Decimal("0")
    target_date: dt.date

    @classmethod
    def validate_payload(
        cls, payload: "SavingsGoalPayload", today: dt.date
    ) -> "SavingsGoalPayload":
        errors = _goal_rules(
            payload.name,
            payload.target_amount,
            payload.saved_amount,
            payload.target_date,
            today,
        )
        if errors:
            raise ValidationError(errors)
        payload.name = payload.name.strip()
        return payload


class SavingsGoalUpdatePayload(BaseModel):
    name: str | None = None
    target_amount: Decimal | None = None
    saved_amount: Decimal | None = None
    target_date: dt.date | None = None

    @classmethod
    def validate_payload(
        cls, payload: "SavingsGoalUpdatePayload", today: dt.date
    ) -> dict[str, Any]:
        changes = {
            key: value
            for key, value in payload.model_dump(exclude_unset=True).items()
            if value is not None
        }
        # A goal may already be overdue; only a newly supplied date must be current.
        errors = _goal_rules(
            changes.get("name"),
            changes.get("target_amount"),
            None,
            changes.get("target_date"),
            today,
        )
        if "saved_amount" in changes and changes["saved_amount"] < 0:
            errors.append("Saved amount cannot be negative.")
        _check_digits(changes.get("saved_amount"), errors)
        if errors:
            raise ValidationError(errors)
        if "name" in changes:
            changes["name"] = changes["name"].strip()
        return changes


class DepositPayload(BaseModel):
    amount: Decimal

    @classmethod
    def validate_payload(cls, payload: "DepositPayload") -> "DepositPayload":
        errors: list[str] = []
        if payload.amount <= 0:
            errors.append("Deposit amount must be greater than zero.")
        _check_digits(payload.amount, errors)
        if errors:
            raise ValidationError(errors)
        return payload
