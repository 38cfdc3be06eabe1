"""Read-only project, user and expense records consumed by the PDF export."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Mapping, Protocol

import requests
from pyairtable import Api
from pyairtable.formulas import match

logger = logging.getLogger(__name__)

PROJECT_STATUSES = ("active", "completed", "archived")
EXPENSE_CATEGORIES = ("eating", "traveling", "accommodation", "equipment", "other")

RECORD_ID_RE = re.compile(r"^rec[a-zA-Z0-9]{14}$")


class NotFoundError(Exception):
    """The project does not exist or has no expenses to report."""


@dataclass(frozen=True)
class User:
    id: str
    name: str
    email: str
    department: str | None = None


@dataclass(frozen=True)
class ReceiptFile:
    filename: str | None = None
    original_name: str | None = None
    path: str | None = None
    mimetype: str | None = None
    size: int | None = None


@dataclass(frozen=True)
class Project:
    id: str
    name: str
    owner: User
    description: str | None = None
    budget: Decimal = Decimal("0")
    status: str = "active"
    supervisor: User | None = None


@dataclass(frozen=True)
class Expense:
    id: str
    project_id: str
    shop_name: str
    category: str
    amount: Decimal
    date: date
    name: str | None = None
    detail: str | None = None
    notes: str | None = None
    receipt: ReceiptFile | None = None

    @property
    def display_name(self) -> str | None:
        """Shop name first, then the legacy free-form name."""
        return self.shop_name or self.name or None


def _text(value: Any) -> str | None:
    if value in (None, ""):
        return None
    text = str(value).strip()
    return text or None


def _first_link(value: Any) -> str | None:
    """Return the first id of an Airtable linked-record field."""
    if isinstance(value, list):
        return _text(value[0]) if value else None
    return _text(value)


def parse_amount(raw: Any, *, field: str = "Amount") -> Decimal:
    """Convert a stored number to a non-negative Decimal."""
    if raw in (None, ""):
        return Decimal("0")
    try:
        amount = Decimal(str(raw).strip())
    except InvalidOperation as exc:
        raise ValueError(f"{field} must be a number") from exc
    if amount < 0:
        raise ValueError(f"{field} must not be negative")
    return amount


def parse_date(raw: Any) -> date:
    """Accept ``YYYY-MM-DD`` strings, ISO timestamps and date objects."""
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    text = _text(raw)
    if not text:
        raise ValueError("Date is required")
    try:
        return date.fromisoformat(text[:10])
    except ValueError as exc:
        raise ValueError(f"Invalid date: {text}") from exc


def user_from_record(record: Mapping[str, Any]) -> User:
    fields = record.get("fields", {})
    return User(
        id=record.get("id") or "",
        name=_text(fields.get("Name")) or "",
        email=_text(fields.get("Email")) or "",
        department=_text(fields.get("Department")),
    )


def project_from_record(
    record: Mapping[str, Any],
    owner: User,
    supervisor: User | None = None,
) -> Project:
    fields = record.get("fields", {})
    status = (_text(fields.get("Status")) or "active").lower()
    if status not in PROJECT_STATUSES:
        raise ValueError(f"Unknown project status: {status}")
    return Project(
        id=record.get("id") or "",
        name=_text(fields.get("Name")) or "",
        owner=owner,
        description=_text(fields.get("Description")),
        budget=parse_amount(fields.get("Budget"), field="Budget"),
        status=status,
        supervisor=supervisor,
    )


def receipt_from_fields(fields: Mapping[str, Any]) -> ReceiptFile | None:
    """Build the attachment descriptor, or ``None`` when nothing was uploaded."""
    filename = _text(fields.get("Receipt Filename"))
    path = _text(fields.get("Receipt Path"))
    if not (filename or path):
        return None
    size = fields.get("Receipt Size")
    return ReceiptFile(
        filename=filename,
        original_name=_text(fields.get("Receipt Original Name")),
        path=path,
        mimetype=_text(fields.get("Receipt Mimetype")),
        size=int(size) if size not in (None, "") else None,
    )


def expense_from_record(record: Mapping[str, Any]) -> Expense:
    fields = record.get("fields", {})
    category = (_text(fields.get("Category")) or "other").lower()
    return Expense(
        id=record.get("id") or "",
        project_id=_text(fields.get("Project ID")) or "",
        shop_name=_text(fields.get("Shop Name")) or "",
        category=category,
        amount=parse_amount(fields.get("Amount")),
        date=parse_date(fields.get("Date")),
        name=_text(fields.get("Name")),
        detail=_text(fields.get("Detail")),
        notes=_text(fields.get("Notes")),
        receipt=receipt_from_fields(fields),
    )


class RecordSource(Protocol):
    def get_project(self, project_id: str) -> Project | None:
        ...

    def get_expenses(self, project_id: str, category: str | None = None) -> list[Expense]:
        ...


class AirtableSource:
    """Record source backed by the Projects, Users and Expenses tables."""

    def __init__(
        self,
        api_key: str,
        base_id: str,
        *,
        projects_table: str = "Projects",
        users_table: str = "Users",
        expenses_table: str = "Expenses",
        api: Api | None = None,
    ) -> None:
        api = api or Api(api_key)
        self.projects = api.table(base_id, projects_table)
        self.users = api.table(base_id, users_table)
        self.expenses = api.table(base_id, expenses_table)

    def ping(self) -> int:
        """Fetch at most one project to prove the credentials work."""
        return len(self.projects.all(max_records=1))

    @staticmethod
    def _get_or_none(table: Any, record_id: str | None) -> dict | None:
        if not RECORD_ID_RE.match(record_id or ""):
            return None
        try:
            return table.get(record_id)
        except requests.HTTPError as exc:
            if exc.response is not None and exc.response.status_code == 404:
                return None
            raise

    def _user(self, user_id: str | None) -> User | None:
        record = self._get_or_none(self.users, user_id)
        return user_from_record(record) if record else None

    def get_project(self, project_id: str) -> Project | None:
        record = self._get_or_none(self.projects, project_id)
        if record is None:
            return None
        fields = record.get("fields", {})
        owner_id = _first_link(fields.get("Owner"))
        owner = self._user(owner_id)
        if owner is None:
            raise LookupError(f"Owner {owner_id!r} of project {project_id} could not be resolved")
        supervisor_id = _first_link(fields.get("Supervisor"))
        supervisor = self._user(supervisor_id)
        if supervisor_id and supervisor is None:
            logger.warning("Supervisor %s of project %s not found; omitting", supervisor_id, project_id)
        return project_from_record(record, owner, supervisor)

    def get_expenses(self, project_id: str, category: str | None = None) -> list[Expense]:
        criteria: dict[str, Any] = {"Project ID": project_id}
        if category:
            criteria["Category"] = category
        records = self.expenses.all(formula=match(criteria), sort=["Date"])
        expenses = [expense_from_record(record) for record in records]
        expenses.sort(key=lambda expense: expense.date)
        logger.debug("Loaded %d expenses for project %s", len(expenses), project_id)
        return expenses


def resolve_report_inputs(
    source: RecordSource,
    project_id: str,
    category: str | None = None,
) -> tuple[Project, list[Expense]]:
    """Load the project and its (optionally filtered) expenses for a report."""
    category = (category or "").strip().lower() or None
    project = source.get_project(project_id)
    if project is None:
        raise NotFoundError("Project not found")
    expenses = sorted(source.get_expenses(project_id, category), key=lambda expense: expense.date)
    if not expenses:
        raise NotFoundError("No expenses found for this project")
    return project, expenses


def resolve_receipt_path(receipt: ReceiptFile | None, upload_dir: Path | str | None) -> Path | None:
    """Return where the receipt file should live, or ``None`` if none was uploaded."""
    if receipt is None:
        return None
    stored = receipt.path or receipt.filename
    if not stored:
        return None
    path = Path(stored)
    if not path.is_absolute() and upload_dir is not None:
        path = Path(upload_dir) / path
    return path
