"""
Interactive CLI for the clinic portal.
Sign in once, then browse the portal pages the signed-in role may open.
"""

import getpass

import pandas as pd

from clinic_portal import billing, dashboard, prescriptions, records
from clinic_portal.auth_client import init_auth_client
from clinic_portal.config import SESSION_FILE
from clinic_portal.database import init_engine
from clinic_portal.formatting import format_pkr
from clinic_portal.models import as_json
from clinic_portal.printing import document_number, render_invoice_fragment, render_print_document
from clinic_portal.rbac import GateDecision, allowed_roles_for, build_scope, check_access, load_profile
from clinic_portal.session_store import GENERIC_LOGIN_ERROR, SessionStore, load_session, save_session

COMMANDS = {
    "dashboard": "dashboard",
    "patients": "patients",
    "appointments": "appointments",
    "invoices": "billing",
    "prescriptions": "prescriptions",
    "print": "billing",
}

HELP = """Commands:
  dashboard                 clinic summary
  patients [search]         patient list
  appointments              appointment list
  invoices                  invoices with payment status
  prescriptions [search]    prescriptions with validity
  print invoice <id>        write a printable invoice page
  refresh                   refresh the session tokens
  logout | quit"""


def _table(rows, columns=None):
    df = pd.DataFrame(rows, columns=columns)
    if df.empty:
        print("(no rows)")
    else:
        print(df.to_markdown(index=False))


def _sign_in(store: SessionStore) -> bool:
    saved = load_session(SESSION_FILE)
    if saved is not None:
        print("[auth] Restoring saved session...")
        if store.restore(saved) and store.profile is not None:
            return True
        print("[auth] Saved session is no longer valid.")

    try:
        email = input("Email (or 'quit'): ").strip()
        if not email or email.lower() in {"quit", "exit"}:
            return False
        password = getpass.getpass("Password: ")
    except (EOFError, KeyboardInterrupt):
        print("\nExiting.")
        return False

    result = store.sign_in(email, password)
    if not result.ok:
        print(f"\n[ERROR] {result.error or GENERIC_LOGIN_ERROR}")
        return False
    return True


def _show_dashboard(engine, profile):
    summary = dashboard.build_dashboard(engine, profile)
    first_name = (profile.name or "").split(" ")[0]
    print(f"\n{dashboard.greeting(pd.Timestamp.now().hour)}, {first_name}")
    print(f"Patients: {summary.total_patients}   Today: {summary.today_appointments}   "
          f"Upcoming: {summary.upcoming_appointments}")
    print(f"Invoices: {summary.total_invoices}   Unpaid: {summary.unpaid_invoices}   "
          f"Revenue: {format_pkr(summary.total_revenue)}")
    print(f"Active prescriptions: {summary.active_prescriptions_count}")
    print("\n[Today's schedule]")
    _table(summary.today_schedule)
    print("\n[Recent patients]")
    _table(summary.recent_patients)


def _show_invoices(engine, profile):
    items = billing.list_invoices(engine, build_scope(profile))
    _table([
        {
            "invoice": document_number(i.id),
            "patient": i.patient.name if i.patient else "—",
            "total": format_pkr(i.total_amount),
            "paid": format_pkr(i.amount_paid),
            "balance": format_pkr(billing.balance_due(i.total_amount, i.amount_paid)),
            "status": billing.STATUS_LABELS.get(i.status, i.status),
        }
        for i in items
    ])
    stats = billing.invoice_stats(items)
    print(f"\nTotal {stats['total']}  Paid {stats['paid']}  Unpaid {stats['unpaid']}  "
          f"Revenue {format_pkr(stats['revenue'])}")


def _show_prescriptions(engine, profile, search):
    items = prescriptions.list_prescriptions(engine, build_scope(profile), search)
    _table([
        {
            "rx": document_number(rx.id, 6),
            "patient": rx.patient.name if rx.patient else "—",
            "doctor": rx.doctor.name if rx.doctor else "—",
            "medicines": len(rx.medicines),
            "validity": prescriptions.VALIDITY_LABELS[prescriptions.classify(rx.start_date, rx.end_date)],
        }
        for rx in items
    ])


def _print_invoice(engine, profile, invoice_id):
    invoice = billing.get_invoice(engine, invoice_id, build_scope(profile))
    linked = billing.latest_prescription_for(engine, invoice.patient_id)
    filename = f"Invoice-{document_number(invoice.id)}"
    page = render_print_document(render_invoice_fragment(invoice, linked), filename)
    if page is None:
        return
    with open(f"{filename}.html", "w", encoding="utf-8") as fh:
        fh.write(page)
    print(f"[print] Wrote {filename}.html")


def main():
    print("=== Dental Clinic Portal ===\n")

    engine = init_engine()
    store = SessionStore(init_auth_client(), lambda uid: load_profile(engine, uid))

    if not _sign_in(store):
        store.close()
        return

    save_session(SESSION_FILE, store.session)
    print(f"\n[auth] Signed in as: {store.profile.name} (role={store.profile.role})")
    print(HELP)

    while True:
        try:
            line = input("\nportal> ").strip()
        except (EOFError, KeyboardInterrupt):
            print("\nExiting.")
            break

        if not line:
            continue
        cmd, _, arg = line.partition(" ")
        cmd = cmd.lower()
        arg = arg.strip() or None

        if cmd in {"quit", "exit"}:
            print("Goodbye.")
            break
        if cmd == "logout":
            store.sign_out()
            save_session(SESSION_FILE, None)
            print("[auth] Signed out.")
            break
        if cmd == "refresh":
            print("[auth] Session refreshed." if store.refresh_session() else "[WARN] Refresh failed.")
            save_session(SESSION_FILE, store.session)
            if not store.has_user:
                break
            continue
        if cmd not in COMMANDS:
            print(HELP)
            continue

        store.refresh_profile()
        decision = check_access(store.is_loading, store.has_user, store.profile,
                                allowed_roles_for(COMMANDS[cmd]))
        if decision is GateDecision.DENY_LOGIN:
            print("[auth] Session ended. Please sign in again.")
            save_session(SESSION_FILE, None)
            break
        if decision is not GateDecision.ALLOW or store.profile is None:
            print(f"[auth] Role '{store.profile.role if store.profile else '?'}' cannot open {cmd}.")
            continue

        profile = store.profile
        try:
            if cmd == "dashboard":
                _show_dashboard(engine, profile)
            elif cmd == "patients":
                items, total = records.list_patients(engine, build_scope(profile), search=arg)
                _table([{k: v for k, v in as_json(p).items() if k in ("name", "contact", "gender", "age")}
                        for p in items])
                print(f"\n{total} patient(s)")
            elif cmd == "appointments":
                items = records.list_appointments(engine, build_scope(profile), search=arg)
                _table([
                    {"date": str(a.appointment_date), "time": str(a.appointment_time)[:5],
                     "patient": a.patient.name if a.patient else "—", "status": a.status}
                    for a in items
                ])
            elif cmd == "invoices":
                _show_invoices(engine, profile)
            elif cmd == "prescriptions":
                _show_prescriptions(engine, profile, arg)
            elif cmd == "print":
                parts = (arg or "").split()
                if len(parts) != 2 or parts[0] != "invoice":
                    print("Usage: print invoice <id>")
                    continue
                _print_invoice(engine, profile, parts[1])
        except (ValueError, LookupError) as e:
            print(f"\n[ERROR] {e}")
        except Exception as e:
            print("\n[DB ERROR] Database error while loading the page.")
            print("Details:", e)

        save_session(SESSION_FILE, store.session)

    store.close()


if __name__ == "__main__":
    main()
