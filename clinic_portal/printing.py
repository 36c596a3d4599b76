"""
Print / save-as-PDF renderer.

Fragments (the invoice and prescription printouts) and the standalone
documents that wrap them are Jinja2 templates under ``templates/``. The
wrapping documents inline their own style sheet so a printout renders the
same without the portal's CSS.
"""

import os
import sys
from datetime import date, datetime
from typing import Any, Dict, Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape

from clinic_portal.billing import balance_due
from clinic_portal.config import (
    CLINIC_DISPLAY_NAME, PDF_PAGE_MARGIN, PDF_PAGE_SIZE, PDF_PRINT_DELAY_MS, PRINT_DELAY_MS,
)
from clinic_portal.formatting import format_pkr
from clinic_portal.models import Clinic, Invoice, Prescription, parse_date
from clinic_portal.prescriptions import VALIDITY_LABELS, Validity, classify

TEMPLATE_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "templates")

PAYMENT_LABELS = {
    "unpaid": "UNPAID",
    "paid": "PAID",
    "partial": "PARTIAL",
    "cancelled": "CANCELLED",
}

PAYMENT_BADGES = {
    "paid": "bg-emerald-100 text-emerald-700",
    "partial": "bg-amber-100 text-amber-700",
    "unpaid": "bg-red-100 text-red-700",
}

VALIDITY_BADGES = {
    Validity.ACTIVE: "bg-emerald-100 text-emerald-700",
    Validity.UPCOMING: "bg-sky-100 text-sky-700",
    Validity.EXPIRED: "bg-red-100 text-red-600",
}


def document_number(record_id: str, length: int = 8) -> str:
    return (record_id or "")[:length].upper()


def _long_date(value: Any) -> str:
    d = parse_date(value)
    return f"{d:%B} {d.day}, {d.year}" if d else ""


def _short_date(value: Any, missing: str = "—") -> str:
    d = parse_date(value)
    return f"{d:%b} {d.day}, {d.year}" if d else missing


def _timestamp(value: datetime) -> str:
    return f"{value:%b} {value.day}, {value.year} {value:%H:%M}"


def _build_env() -> Environment:
    env = Environment(
        loader=FileSystemLoader(TEMPLATE_DIR),
        autoescape=select_autoescape(["html"]),
    )
    env.filters["pkr"] = format_pkr
    env.filters["docnum"] = document_number
    env.filters["long_date"] = _long_date
    env.filters["short_date"] = _short_date
    env.filters["timestamp"] = _timestamp
    return env


_env = _build_env()


# ── Standalone documents ─────────────────────────────────────────────

def _is_blank(fragment: Optional[str]) -> bool:
    return fragment is None or not fragment.strip()


def render_print_document(fragment: Optional[str], title: str = "Document") -> Optional[str]:
    """Wrap *fragment* in a page that prints itself and then closes.

    Returns None (and logs) for a missing or blank fragment.
    """
    if _is_blank(fragment):
        print("[print] Print content is empty", file=sys.stderr)
        return None
    return _env.get_template("print_document.html").render(
        title=title, fragment=fragment, delay_ms=PRINT_DELAY_MS,
    )


def render_pdf_document(fragment: Optional[str], filename: str = "document.pdf") -> Optional[str]:
    """Same page with A4 hints; closes once the print dialog is dismissed."""
    if _is_blank(fragment):
        print("[print] PDF content is empty", file=sys.stderr)
        return None
    return _env.get_template("pdf_document.html").render(
        title=filename, fragment=fragment, delay_ms=PDF_PRINT_DELAY_MS,
        page_size=PDF_PAGE_SIZE, page_margin=PDF_PAGE_MARGIN,
    )


# ── Fragments ────────────────────────────────────────────────────────

def _fragment_context(invoice: Optional[Invoice], prescription: Optional[Prescription],
                      clinic: Optional[Clinic], now: Optional[datetime],
                      today: Optional[date]) -> Dict[str, Any]:
    inv_clinic = invoice.clinic if invoice else None
    clinic_name = (clinic.clinic_name if clinic else "") or (inv_clinic.clinic_name if inv_clinic else "")
    clinic_address = (clinic.address if clinic else "") or (inv_clinic.address if inv_clinic else "")
    clinic_phone = (clinic.phone if clinic else "") or (inv_clinic.phone if inv_clinic else "")

    def name_of(attr: str) -> str:
        for record in (invoice, prescription):
            ref = getattr(record, attr, None) if record else None
            if ref and ref.name:
                return ref.name
        return "—"

    ctx: Dict[str, Any] = {
        "invoice": invoice,
        "prescription": prescription,
        "clinic_name": clinic_name or CLINIC_DISPLAY_NAME,
        "clinic_address": clinic_address,
        "clinic_phone": clinic_phone,
        "patient_name": name_of("patient"),
        "patient_contact": invoice.patient.contact if invoice and invoice.patient else "",
        "doctor_name": name_of("doctor"),
        "document_date": (invoice or prescription).created_at if (invoice or prescription) else None,
        "generated_at": now or datetime.now(),
    }
    if invoice:
        ctx["balance_due"] = balance_due(invoice.total_amount, invoice.amount_paid)
        ctx["payment_label"] = PAYMENT_LABELS.get(invoice.status, invoice.status)
        ctx["payment_badge_class"] = PAYMENT_BADGES.get(invoice.status, "bg-gray-100 text-gray-600")
    if prescription:
        validity = classify(prescription.start_date, prescription.end_date, today)
        if validity is not Validity.NONE:
            ctx["validity_label"] = VALIDITY_LABELS[validity]
            ctx["validity_badge_class"] = VALIDITY_BADGES[validity]
    return ctx


def render_invoice_fragment(invoice: Invoice, prescription: Optional[Prescription] = None,
                            clinic: Optional[Clinic] = None, now: Optional[datetime] = None,
                            today: Optional[date] = None) -> str:
    """Invoice printout, with the linked prescription below it when given."""
    ctx = _fragment_context(invoice, prescription, clinic, now, today)
    return _env.get_template("document.html").render(**ctx)


def render_prescription_fragment(prescription: Prescription, clinic: Optional[Clinic] = None,
                                 now: Optional[datetime] = None,
                                 today: Optional[date] = None) -> str:
    ctx = _fragment_context(None, prescription, clinic, now, today)
    return _env.get_template("document.html").render(**ctx)
