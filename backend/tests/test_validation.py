import pytest
from pydantic import BaseModel, ValidationError

from backend.app.validation import InvoiceNo, ManualMovementKind, PaymentMethod, ReceptionStatus, SaleStatus


class _M(BaseModel):
    kind: ManualMovementKind
    method: PaymentMethod
    sale_status: SaleStatus
    reception_status: ReceptionStatus


class _Inv(BaseModel):
    invoice_no: InvoiceNo


def test_validation_types_normalize_case():
    m = _M(kind=" IN ", method="Card", sale_status="ANULLED", reception_status="Pending")
    assert m.kind == "in"
    assert m.method == "card"
    assert m.sale_status == "anulled"
    assert m.reception_status == "pending"


def test_manual_movement_kind_excludes_set():
    with pytest.raises(ValidationError):
        _M(kind="set", method="cash", sale_status="active", reception_status="pending")


def test_invoice_number_is_trimmed_and_restricted():
    assert _Inv(invoice_no="  FA-2026.001 ").invoice_no == "FA-2026.001"
    for bad in ("", "   ", "-leading-dash", "inv/42"):
        with pytest.raises(ValidationError):
            _Inv(invoice_no=bad)
