from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BeforeValidator, StringConstraints


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


# Canonical codes mirror Postgres enums in `backend/db/migrations/001_init.sql`.
MovementKind = Annotated[Literal["in", "out", "set"], BeforeValidator(_to_lower_str)]
ManualMovementKind = Annotated[Literal["in", "out"], BeforeValidator(_to_lower_str)]
SourceKind = Annotated[Literal["sale", "reception", "adjustment"], BeforeValidator(_to_lower_str)]
ManualSourceKind = Annotated[Literal["adjustment"], BeforeValidator(_to_lower_str)]
SaleStatus = Annotated[Literal["active", "anulled"], BeforeValidator(_to_lower_str)]
ReceptionStatus = Annotated[Literal["pending", "processed", "cancelled"], BeforeValidator(_to_lower_str)]
UnitType = Annotated[Literal["unit", "weight"], BeforeValidator(_to_lower_str)]
PaymentMethod = Annotated[Literal["cash", "card", "transfer"], BeforeValidator(_to_lower_str)]


# Supplier invoice numbers: alphanumerics, dashes, dots and inner spaces.
InvoiceNo = Annotated[
    str,
    BeforeValidator(lambda v: v if v is None else str(v).strip()),
    StringConstraints(min_length=1, max_length=100, pattern=r"^[A-Za-z0-9][A-Za-z0-9\-. ]*$"),
]
