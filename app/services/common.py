"""Common helper functions for the service layer.

- UUID handling
- Query ordering and pagination
- Enum validation
- Entity retrieval with not-found handling
- Request context passed explicitly through service calls
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

from app.services.exceptions import ResourceNotFound, ValidationError

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

T = TypeVar("T")


@dataclass(frozen=True)
class ProvisioningContext:
    """Who is acting and, optionally, which company they act for."""

    actor: str = "system"
    company_id: uuid.UUID | None = None

    def scope(self, query, model):
        if self.company_id is not None and hasattr(model, "company_id"):
            return query.filter(model.company_id == self.company_id)
        return query


SYSTEM_CONTEXT = ProvisioningContext()


def coerce_uuid(value):
    """Convert value to UUID, returning None if value is None."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as exc:
        raise ValidationError(f"Invalid identifier: {value}") from exc


def apply_ordering(query, order_by: str, order_dir: str, allowed_columns: dict):
    """Apply ordering to a query.

    Raises:
        ValidationError: if order_by is not in allowed_columns
    """
    if order_by not in allowed_columns:
        raise ValidationError(
            f"Invalid order_by. Allowed: {', '.join(sorted(allowed_columns))}"
        )
    column = allowed_columns[order_by]
    if order_dir == "desc":
        return query.order_by(column.desc())
    return query.order_by(column.asc())


def apply_pagination(query, limit: int, offset: int):
    return query.limit(limit).offset(offset)


def validate_enum(value, enum_cls, label: str):
    """Validate and convert a value to an enum member (None passes through)."""
    if value is None:
        return None
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError as exc:
        raise ValidationError(f"Invalid {label}") from exc


def get_or_404(
    db: Session,
    model: type[T],
    id,
    detail: str | None = None,
    ctx: ProvisioningContext | None = None,
) -> T:
    """Load an entity by id or raise ResourceNotFound."""
    entity = db.get(model, coerce_uuid(id))
    if entity is None:
        raise ResourceNotFound(detail or f"{model.__name__} not found")
    if (
        ctx is not None
        and ctx.company_id is not None
        and getattr(entity, "company_id", None) not in (None, ctx.company_id)
    ):
        raise ResourceNotFound(detail or f"{model.__name__} not found")
    return entity


def list_response(items: list, limit: int, offset: int) -> dict:
    return {"items": items, "count": len(items), "limit": limit, "offset": offset}


class ListResponseMixin:
    @classmethod
    def list_response(cls, db, *args, **kwargs):
        limit = kwargs.get("limit", 50)
        offset = kwargs.get("offset", 0)
        items = cls.list(db, *args, **kwargs)
        return list_response(items, limit, offset)
