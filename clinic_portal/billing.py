"""
Invoice totals engine and invoice records.

The arithmetic at the top of the module is pure: given the same lines, fee,
status and entered amount it always produces the same totals. The record
functions below it persist invoices so that ``status`` and ``amount_paid`` are
only ever written together.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import delete, insert, select, update

from clinic_portal.database import clinics, invoices, new_id, patients, users_profile, utcnow
from clinic_portal.models import (
    INVOICE_STATUSES, Invoice, InvoiceLine, Prescription, Profile, to_decimal,
)
from clinic_portal.prescriptions import patient_prescriptions
from clinic_portal.rbac import ClinicScope, resolve_doctor_id

ZERO = Decimal("0")

STATUS_LABELS = {
    "unpaid": "Unpaid",
    "paid": "Paid",
    "partial": "Partial",
    "cancelled": "Cancelled",
}


# ── Totals engine ────────────────────────────────────────────────────

def subtotal(lines: Iterable[InvoiceLine]) -> Decimal:
    return sum((line.quantity * line.unit_price for line in lines), ZERO)


def doctor_fee_amount(value: Any) -> Decimal:
    fee = to_decimal(value)
    if fee < 0:
        raise ValueError("Doctor fee cannot be negative.")
    return fee


def invoice_total(lines: Iterable[InvoiceLine], doctor_fee: Any = 0) -> Decimal:
    return subtotal(lines) + doctor_fee_amount(doctor_fee)


def effective_amount_paid(status: str, entered: Any, total: Any) -> Decimal:
    """Amount that counts as paid for *status*.

    ``partial`` passes the entered amount through unclamped.
    """
    _check_status(status)
    if status == "paid":
        return to_decimal(total)
    if status in ("unpaid", "cancelled"):
        return ZERO
    return to_decimal(entered)


def balance_due(total: Any, amount_paid: Any) -> Decimal:
    return max(ZERO, to_decimal(total) - to_decimal(amount_paid))


@dataclass(frozen=True)
class PaymentUpdate:
    status: str
    amount_paid: Decimal


def apply_payment(status: str, entered: Any, total: Any) -> PaymentUpdate:
    """Resolve an operator's payment edit into the values to store.

    A partial payment that reaches the total is promoted to ``paid`` with the
    amount pinned to the total.
    """
    _check_status(status)
    total = to_decimal(total)
    entered = to_decimal(entered)
    if status == "partial" and entered >= total:
        status = "paid"
    return PaymentUpdate(status=status, amount_paid=effective_amount_paid(status, entered, total))


@dataclass(frozen=True)
class InvoiceTotals:
    subtotal: Decimal
    doctor_fee: Decimal
    total: Decimal
    status: str
    amount_paid: Decimal
    balance_due: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subtotal": float(self.subtotal),
            "doctor_fee": float(self.doctor_fee),
            "total": float(self.total),
            "status": self.status,
            "amount_paid": float(self.amount_paid),
            "balance_due": float(self.balance_due),
        }


def compute_totals(lines: Iterable[InvoiceLine], doctor_fee: Any = 0,
                   status: str = "unpaid", amount_paid: Any = 0) -> InvoiceTotals:
    lines = list(lines)
    sub = subtotal(lines)
    fee = doctor_fee_amount(doctor_fee)
    total = sub + fee
    payment = apply_payment(status, amount_paid, total)
    return InvoiceTotals(
        subtotal=sub,
        doctor_fee=fee,
        total=total,
        status=payment.status,
        amount_paid=payment.amount_paid,
        balance_due=balance_due(total, payment.amount_paid),
    )


def _check_status(status: str) -> None:
    if status not in INVOICE_STATUSES:
        raise ValueError(f"Unsupported invoice status '{status}'.")


def reprice_lines(lines: List[InvoiceLine], prices: Mapping[str, Decimal]) -> List[InvoiceLine]:
    """Fill in the unit price of unpriced lines whose description names a known service.

    *prices* maps lower-cased service names to their effective price. A line
    that already carries a non-zero price keeps it.
    """
    repriced = []
    for line in lines:
        price = prices.get(line.description.strip().lower())
        if price is None or line.unit_price != 0:
            repriced.append(line)
        else:
            repriced.append(InvoiceLine(line.description, line.quantity, to_decimal(price)))
    return repriced


# ── Records ──────────────────────────────────────────────────────────

_doctor = users_profile.alias("doctor")


def _invoice_select():
    return (
        select(
            invoices,
            patients.c.id.label("patient_ref_id"),
            patients.c.name.label("patient_name"),
            patients.c.contact.label("patient_contact"),
            _doctor.c.id.label("doctor_ref_id"),
            _doctor.c.name.label("doctor_name"),
            clinics.c.id.label("clinic_ref_id"),
            clinics.c.clinic_name.label("clinic_name"),
            clinics.c.address.label("clinic_address"),
            clinics.c.phone.label("clinic_phone"),
        )
        .select_from(
            invoices
            .outerjoin(patients, patients.c.id == invoices.c.patient_id)
            .outerjoin(_doctor, _doctor.c.id == invoices.c.doctor_id)
            .outerjoin(clinics, clinics.c.id == invoices.c.clinic_id)
        )
    )


def _scope_invoices(stmt, scope: Optional[ClinicScope]):
    if scope is not None:
        if scope.own_doctor_id:
            stmt = stmt.where(invoices.c.doctor_id == scope.own_doctor_id)
        if scope.clinic_id:
            stmt = stmt.where(invoices.c.clinic_id == scope.clinic_id)
    return stmt


def list_invoices(engine, scope: Optional[ClinicScope], search: Optional[str] = None) -> List[Invoice]:
    """Newest first; *search* matches the patient name."""
    stmt = _invoice_select().order_by(invoices.c.created_at.desc())
    stmt = _scope_invoices(stmt, scope)
    with engine.connect() as conn:
        rows = conn.execute(stmt).mappings().all()
    items = [Invoice.from_row(r) for r in rows]
    term = (search or "").strip().lower()
    if term:
        items = [inv for inv in items if inv.patient and term in inv.patient.name.lower()]
    return items


def get_invoice(engine, invoice_id: str, scope: Optional[ClinicScope] = None) -> Invoice:
    """One invoice; LookupError when missing or outside *scope*."""
    stmt = _scope_invoices(_invoice_select().where(invoices.c.id == invoice_id), scope)
    with engine.connect() as conn:
        row = conn.execute(stmt).mappings().first()
    if not row:
        raise LookupError(f"Invoice {invoice_id} not found.")
    return Invoice.from_row(row)


def create_invoice(engine, profile: Profile, data: Mapping[str, Any]) -> Invoice:
    patient_id = (data.get("patient_id") or "").strip()
    if not patient_id:
        raise ValueError("Please select a patient.")

    lines = [InvoiceLine.from_dict(i) for i in (data.get("items") or [])]
    lines = [line for line in lines if line.description]
    status = data.get("status") or "unpaid"
    _check_status(status)

    fee = doctor_fee_amount(data.get("doctor_fee"))
    total = invoice_total(lines, fee)
    entered = data.get("amount_paid") if status == "partial" else 0
    payment = apply_payment(status, entered, total)

    invoice_id = new_id()
    with engine.begin() as conn:
        conn.execute(insert(invoices).values(
            id=invoice_id,
            patient_id=patient_id,
            clinic_id=data.get("clinic_id") or profile.clinic_id or None,
            doctor_id=resolve_doctor_id(profile, data.get("doctor_id")),
            items=[line.to_dict() for line in lines],
            doctor_fee=fee,
            total_amount=total,
            amount_paid=payment.amount_paid,
            status=payment.status,
            created_at=utcnow(),
        ))
    return get_invoice(engine, invoice_id)


def _write_payment(engine, invoice_id: str, payment: PaymentUpdate,
                   scope: Optional[ClinicScope] = None) -> None:
    with engine.begin() as conn:
        result = conn.execute(
            _scope_invoices(update(invoices).where(invoices.c.id == invoice_id), scope)
            .values(status=payment.status, amount_paid=payment.amount_paid)
        )
    if result.rowcount == 0:
        raise LookupError(f"Invoice {invoice_id} not found.")


def update_payment(engine, invoice_id: str, status: str, amount: Any,
                   scope: Optional[ClinicScope] = None) -> PaymentUpdate:
    """Apply an operator's payment edit (status plus entered amount)."""
    invoice = get_invoice(engine, invoice_id, scope)
    payment = apply_payment(status, amount, invoice.total_amount)
    _write_payment(engine, invoice_id, payment, scope)
    return payment


def update_status(engine, invoice_id: str, status: str,
                  scope: Optional[ClinicScope] = None) -> PaymentUpdate:
    """Quick status change; a partial keeps the amount already recorded."""
    invoice = get_invoice(engine, invoice_id, scope)
    payment = apply_payment(status, invoice.amount_paid, invoice.total_amount)
    _write_payment(engine, invoice_id, payment, scope)
    return payment


def delete_invoice(engine, invoice_id: str, scope: Optional[ClinicScope] = None) -> None:
    stmt = _scope_invoices(delete(invoices).where(invoices.c.id == invoice_id), scope)
    with engine.begin() as conn:
        result = conn.execute(stmt)
    if result.rowcount == 0:
        raise LookupError(f"Invoice {invoice_id} not found.")


def invoice_stats(items: Iterable[Invoice]) -> Dict[str, Any]:
    items = list(items)
    return {
        "total": len(items),
        "paid": sum(1 for i in items if i.status == "paid"),
        "unpaid": sum(1 for i in items if i.status == "unpaid"),
        "revenue": sum((i.total_amount for i in items if i.status == "paid"), ZERO),
    }


def latest_prescription_for(engine, patient_id: str) -> Optional[Prescription]:
    """Most recent prescription of the invoiced patient, for the printout."""
    found = patient_prescriptions(engine, patient_id)
    return found[0] if found else None
