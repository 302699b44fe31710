"""
Typed failures raised by the stock ledger and its workflows.

Three families, translated to HTTP responses in `main.py`:
- InvariantViolation: a caller broke a contract (bad kind, bad arithmetic). Fatal, never retried.
- BusinessRuleError: an expected rejection the user can act on. Carries structured context.
- TransientError: contention that survived the internal retry budget ("system busy").

Cache failures never show up here: the cache package logs and swallows them.
"""
from decimal import Decimal
from typing import Any, Optional


def _plain(v: Any) -> Any:
    if isinstance(v, Decimal):
        return str(v)
    return v


class LedgerError(Exception):
    code = "ledger_error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = {k: _plain(v) for k, v in context.items()}

    def to_dict(self) -> dict:
        out = {"detail": self.code, "message": self.message}
        if self.context:
            out["context"] = dict(self.context)
        return out


# --- invariant violations -------------------------------------------------

class InvariantViolation(LedgerError):
    code = "invariant_violation"


class InvalidMutation(InvariantViolation):
    code = "invalid_mutation"


class InvalidMovement(InvariantViolation):
    code = "invalid_movement"


class MovementArithmeticError(InvariantViolation):
    code = "movement_arithmetic_mismatch"


# --- business rule rejections ----------------------------------------------

class BusinessRuleError(LedgerError):
    code = "business_rule"


class NotFoundError(BusinessRuleError):
    code = "not_found"


class ProductNotFound(NotFoundError):
    code = "product_not_found"

    def __init__(self, product_id: Any):
        super().__init__(f"product {product_id} not found", product_id=product_id)


class DocumentNotFound(NotFoundError):
    code = "document_not_found"

    def __init__(self, document_kind: str, document_id: Any):
        super().__init__(
            f"{document_kind} {document_id} not found",
            document_kind=document_kind,
            document_id=document_id,
        )


class SupplierNotFound(NotFoundError):
    code = "supplier_not_found"

    def __init__(self, supplier_id: Any):
        super().__init__(f"supplier {supplier_id} not found or inactive", supplier_id=supplier_id)


class CategoryNotFound(NotFoundError):
    code = "category_not_found"

    def __init__(self, category_id: Any):
        super().__init__(f"category {category_id} not found", category_id=category_id)


class ProductInactive(BusinessRuleError):
    code = "product_inactive"

    def __init__(self, product_id: Any, product_name: Optional[str] = None):
        super().__init__(
            f"product {product_name or product_id} is inactive",
            product_id=product_id,
            product_name=product_name,
        )


class InsufficientStock(BusinessRuleError):
    code = "insufficient_stock"

    def __init__(self, product_id: Any, product_name: str, current: Decimal, requested: Decimal):
        super().__init__(
            f"insufficient stock for {product_name}: current={current} requested={requested}",
            product_id=product_id,
            product_name=product_name,
            current=current,
            requested=requested,
        )
        self.current = current
        self.requested = requested


class StockCeilingExceeded(BusinessRuleError):
    code = "stock_ceiling_exceeded"


class DocumentNotMutable(BusinessRuleError):
    code = "document_not_mutable"

    def __init__(self, document_kind: str, document_id: Any, status: Optional[str], expected: str):
        super().__init__(
            f"{document_kind} {document_id} is {status or 'gone'}, expected {expected}",
            document_kind=document_kind,
            document_id=document_id,
            status=status,
            expected=expected,
        )


class ReversalWindowExceeded(BusinessRuleError):
    code = "reversal_window_exceeded"


class DuplicateProduct(BusinessRuleError):
    code = "duplicate_product"


class DuplicateInvoice(BusinessRuleError):
    code = "duplicate_invoice"


class DuplicateLineProduct(BusinessRuleError):
    code = "duplicate_line_product"


class StockUnchanged(BusinessRuleError):
    code = "stock_unchanged"


class ExcessiveStock(BusinessRuleError):
    code = "excessive_stock"


class AdjustmentNeedsJustification(BusinessRuleError):
    code = "adjustment_needs_justification"


class ManualSourceNotAllowed(BusinessRuleError):
    code = "manual_source_not_allowed"


# --- transient contention -------------------------------------------------

class TransientError(LedgerError):
    code = "system_busy"


class AllocatorExhausted(TransientError):
    code = "sale_number_allocator_exhausted"


class BalanceContention(TransientError):
    code = "balance_contention"


class TransactionConflict(TransientError):
    code = "transaction_conflict"
