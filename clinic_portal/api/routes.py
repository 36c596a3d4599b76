"""
Flask route handlers for the REST API.
"""

import sys
import traceback
from datetime import datetime, timedelta
from functools import wraps

from flask import Response, jsonify, request
from sqlalchemy import text

from clinic_portal import billing, catalog, dashboard, prescriptions, records
from clinic_portal.api.auth import (
    cleanup_expired_sessions, current_profile, current_store, drop_session, generate_token,
    portal_route, sessions, token_required,
)
from clinic_portal.config import LOGIN_PATH, TOKEN_EXPIRY_HOURS
from clinic_portal.models import InvoiceLine, as_json
from clinic_portal.printing import (
    document_number, render_invoice_fragment, render_pdf_document, render_print_document,
    render_prescription_fragment,
)
from clinic_portal.provisioning import handle_provisioning
from clinic_portal.rbac import build_scope, load_profile
from clinic_portal.session_store import GENERIC_LOGIN_ERROR, SessionStore
from clinic_portal.storage import StorageError

MANAGER_ROLES = ("admin", "clinic_admin")


def json_errors(f):
    """Map domain exceptions raised by a handler onto JSON error responses."""
    @wraps(f)
    def decorated(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        except LookupError as e:
            return jsonify({"error": str(e)}), 404
        except StorageError as e:
            print(f"[storage] {e}", file=sys.stderr)
            return jsonify({"error": str(e)}), 502
        except Exception as e:
            print(f"[ERROR] {request.method} {request.path}: {e}", file=sys.stderr)
            traceback.print_exc()
            return jsonify({"error": "Internal server error"}), 500
    return decorated


def _body():
    return request.get_json(silent=True) or {}


def _html(document, filename=None):
    if document is None:
        return jsonify({"error": "Nothing to print"}), 400
    resp = Response(document, mimetype="text/html")
    if filename:
        resp.headers["Content-Disposition"] = f'inline; filename="{filename}"'
    return resp


def _require_manager():
    if current_profile().role not in MANAGER_ROLES:
        return jsonify({"error": "Only administrators can change this."}), 403
    return None


def register_routes(app, engine, auth_client, admin_client=None, storage=None):
    """Register all API routes on the Flask *app*."""

    def profile_loader(user_id):
        return load_profile(engine, user_id)

    # ── Health / info ────────────────────────────────────────────────

    @app.route("/", methods=["GET"])
    def index():
        return jsonify({
            "service": "Clinic Portal API",
            "version": "1.0.0",
            "status": "running",
            "endpoints": {
                "login": "/api/auth/login",
                "logout": "/api/auth/logout",
                "profile": "/api/user/profile",
                "portal": "/api/portal/<resource>",
                "services": "/api/public/services",
                "create_user": "/functions/v1/create-user",
                "health": "/health",
            },
        })

    @app.route("/health", methods=["GET"])
    def health():
        checks = {"database": False, "storage": storage is not None, "provisioning": admin_client is not None}
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            checks["database"] = True
        except Exception as e:
            print(f"[WARN] Health check DB error: {e}", file=sys.stderr)

        healthy = checks["database"]
        return jsonify({
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "active_sessions": len(sessions),
        }), 200 if healthy else 503

    # ── Auth ─────────────────────────────────────────────────────────

    @app.route("/api/auth/login", methods=["POST"])
    def login():
        if not request.is_json:
            return jsonify({"error": "Content-Type must be application/json"}), 400

        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return jsonify({"error": "Request body must be a JSON object"}), 400
        email = data.get("email") or ""
        password = data.get("password") or ""
        if not isinstance(email, str) or not isinstance(password, str):
            return jsonify({"error": "email and password must be strings"}), 400
        email = email.strip()
        if not email or not password:
            return jsonify({"error": "email and password are required"}), 400

        cleanup_expired_sessions()
        store = SessionStore(auth_client.fork(), profile_loader)
        try:
            result = store.sign_in(email, password)
        except Exception as e:
            store.close()
            print(f"[ERROR] Login error: {e}", file=sys.stderr)
            traceback.print_exc()
            return jsonify({"error": "Internal server error during login"}), 500

        if not result.ok:
            store.close()
            print(f"[auth] Login rejected for {email}: {result.error}", file=sys.stderr)
            return jsonify({"error": GENERIC_LOGIN_ERROR}), 401

        token = generate_token(store.profile)
        sessions[token] = {
            "store": store,
            "created_at": datetime.utcnow(),
            "last_activity": datetime.utcnow(),
        }
        return jsonify({
            "success": True,
            "token": token,
            "user": store.profile.to_dict(),
            "expires_at": (datetime.utcnow() + timedelta(hours=TOKEN_EXPIRY_HOURS)).isoformat(),
        }), 200

    @app.route("/api/auth/logout", methods=["POST"])
    @token_required
    def logout():
        current_store().sign_out()
        drop_session(request.token)
        return jsonify({"success": True, "message": "Logged out successfully"}), 200

    @app.route("/api/auth/refresh", methods=["POST"])
    @token_required
    def refresh():
        store = current_store()
        if store.refresh_session():
            return jsonify({"success": True}), 200
        if not store.has_user:
            drop_session(request.token)
            return jsonify({"error": "Session expired. Please sign in again.", "redirect": LOGIN_PATH}), 401
        return jsonify({"error": "Could not refresh session"}), 502

    @app.route("/api/user/profile", methods=["GET"])
    @token_required
    def get_profile():
        store = current_store()
        store.refresh_profile()
        session_data = request.session_data
        return jsonify({
            "success": True,
            "user": store.profile.to_dict() if store.profile else None,
            "session": {
                "created_at": session_data["created_at"].isoformat(),
                "last_activity": session_data["last_activity"].isoformat(),
            },
        }), 200

    # ── Dashboard ────────────────────────────────────────────────────

    @app.route("/api/portal/dashboard", methods=["GET"])
    @portal_route("dashboard")
    @json_errors
    def get_dashboard():
        profile = current_profile()
        summary = dashboard.build_dashboard(engine, profile)
        first_name = (profile.name or "").split(" ")[0]
        payload = summary.to_dict()
        payload["greeting"] = f"{dashboard.greeting(datetime.now().hour)}, {first_name}".rstrip(", ")
        payload["active_prescriptions"] = [
            dict(as_json(rx), validity=prescriptions.classify(rx.start_date, rx.end_date).value)
            for rx in summary.active_prescriptions
        ]
        return jsonify(payload), 200

    # ── Patients ─────────────────────────────────────────────────────

    @app.route("/api/portal/patients", methods=["GET"])
    @portal_route("patients")
    @json_errors
    def get_patients():
        scope = build_scope(current_profile())
        items, total = records.list_patients(
            engine, scope,
            search=request.args.get("search"),
            clinic_id=request.args.get("clinic_id"),
            doctor_id=request.args.get("doctor_id"),
            page=int(request.args.get("page", 1)),
        )
        return jsonify({"patients": as_json(items), "count": total}), 200

    @app.route("/api/portal/patients", methods=["POST"])
    @portal_route("patients")
    @json_errors
    def post_patient():
        patient_id = records.create_patient(engine, _body())
        return jsonify({"success": True, "id": patient_id}), 201

    @app.route("/api/portal/patients/<patient_id>", methods=["GET"])
    @portal_route("patients")
    @json_errors
    def get_patient(patient_id):
        return jsonify(as_json(records.get_patient(engine, patient_id, build_scope(current_profile())))), 200

    @app.route("/api/portal/patients/<patient_id>", methods=["PUT"])
    @portal_route("patients")
    @json_errors
    def put_patient(patient_id):
        records.update_patient(engine, patient_id, _body(), build_scope(current_profile()))
        return jsonify({"success": True}), 200

    @app.route("/api/portal/patients/<patient_id>", methods=["DELETE"])
    @portal_route("patients")
    @json_errors
    def delete_patient(patient_id):
        records.delete_patient(engine, patient_id, build_scope(current_profile()))
        return jsonify({"success": True}), 200

    @app.route("/api/portal/patients/<patient_id>/history", methods=["GET"])
    @portal_route("patients")
    @json_errors
    def get_patient_history(patient_id):
        history = records.patient_history(engine, patient_id, storage, build_scope(current_profile()))
        payload = as_json(history)
        for rx, out in zip(history.prescriptions, payload["prescriptions"]):
            out["validity"] = prescriptions.classify(rx.start_date, rx.end_date).value
        return jsonify(payload), 200

    @app.route("/api/portal/patients/<patient_id>/files", methods=["GET"])
    @portal_route("patients")
    @json_errors
    def get_patient_files(patient_id):
        records.get_patient(engine, patient_id, build_scope(current_profile()))
        return jsonify(as_json(records.list_patient_files(engine, patient_id, storage))), 200

    @app.route("/api/portal/patients/<patient_id>/files", methods=["POST"])
    @portal_route("patients")
    @json_errors
    def post_patient_file(patient_id):
        if storage is None:
            return jsonify({"error": "File storage is not configured"}), 503
        upload = request.files.get("file")
        if upload is None or not upload.filename:
            return jsonify({"error": "file is required"}), 400
        records.get_patient(engine, patient_id, build_scope(current_profile()))
        record = records.upload_patient_file(
            engine, storage, patient_id, upload.filename, upload.read(),
            upload.mimetype, current_profile().id,
        )
        return jsonify(as_json(record)), 201

    @app.route("/api/portal/patients/<patient_id>/files/<file_id>", methods=["DELETE"])
    @portal_route("patients")
    @json_errors
    def delete_patient_file(patient_id, file_id):
        if storage is None:
            return jsonify({"error": "File storage is not configured"}), 503
        records.get_patient(engine, patient_id, build_scope(current_profile()))
        records.delete_patient_file(engine, storage, file_id, patient_id)
        return jsonify({"success": True}), 200

    @app.route("/api/portal/doctors", methods=["GET"])
    @portal_route("patients")
    @json_errors
    def get_doctors():
        return jsonify(records.list_doctors(engine, build_scope(current_profile()))), 200

    # ── Appointments ─────────────────────────────────────────────────

    @app.route("/api/portal/appointments", methods=["GET"])
    @portal_route("appointments")
    @json_errors
    def get_appointments():
        items = records.list_appointments(
            engine, build_scope(current_profile()),
            search=request.args.get("search"),
            status=request.args.get("status"),
        )
        return jsonify(as_json(items)), 200

    @app.route("/api/portal/appointments", methods=["POST"])
    @portal_route("appointments")
    @json_errors
    def post_appointment():
        appt_id = records.save_appointment(engine, current_profile(), _body())
        return jsonify({"success": True, "id": appt_id}), 201

    @app.route("/api/portal/appointments/<appointment_id>", methods=["PUT"])
    @portal_route("appointments")
    @json_errors
    def put_appointment(appointment_id):
        profile = current_profile()
        records.save_appointment(engine, profile, _body(), appointment_id, build_scope(profile))
        return jsonify({"success": True}), 200

    @app.route("/api/portal/appointments/<appointment_id>", methods=["DELETE"])
    @portal_route("appointments")
    @json_errors
    def delete_appointment(appointment_id):
        records.delete_appointment(engine, appointment_id, build_scope(current_profile()))
        return jsonify({"success": True}), 200

    # ── Prescriptions ────────────────────────────────────────────────

    @app.route("/api/portal/prescriptions", methods=["GET"])
    @portal_route("prescriptions")
    @json_errors
    def get_prescriptions():
        items = prescriptions.list_prescriptions(
            engine, build_scope(current_profile()), request.args.get("search"),
        )
        payload = []
        for rx in items:
            out = as_json(rx)
            out["validity"] = prescriptions.classify(rx.start_date, rx.end_date).value
            payload.append(out)
        return jsonify(payload), 200

    @app.route("/api/portal/prescriptions", methods=["POST"])
    @portal_route("prescriptions")
    @json_errors
    def post_prescription():
        rx_id = prescriptions.create_prescription(engine, current_profile(), _body())
        return jsonify({"success": True, "id": rx_id}), 201

    @app.route("/api/portal/prescriptions/<prescription_id>", methods=["GET"])
    @portal_route("prescriptions")
    @json_errors
    def get_prescription(prescription_id):
        return jsonify(as_json(prescriptions.get_prescription(engine, prescription_id, build_scope(current_profile())))), 200

    @app.route("/api/portal/prescriptions/<prescription_id>", methods=["DELETE"])
    @portal_route("prescriptions")
    @json_errors
    def delete_prescription(prescription_id):
        prescriptions.delete_prescription(engine, prescription_id, build_scope(current_profile()))
        return jsonify({"success": True}), 200

    @app.route("/api/portal/prescriptions/<prescription_id>/print", methods=["GET"])
    @portal_route("prescriptions")
    @json_errors
    def print_prescription(prescription_id):
        rx = prescriptions.get_prescription(engine, prescription_id, build_scope(current_profile()))
        clinic = records.get_clinic(engine, current_profile().clinic_id) if current_profile().clinic_id else None
        fragment = render_prescription_fragment(rx, clinic)
        return _html(render_print_document(fragment, f"Prescription-{document_number(rx.id)}"))

    # ── Medicines ────────────────────────────────────────────────────

    @app.route("/api/portal/medicines", methods=["GET"])
    @portal_route("medicines")
    @json_errors
    def get_medicines():
        items = prescriptions.list_medicines(
            engine, request.args.get("search"), request.args.get("type"),
        )
        return jsonify(as_json(items)), 200

    @app.route("/api/portal/medicines", methods=["POST"])
    @portal_route("medicines")
    @json_errors
    def post_medicine():
        med_id = prescriptions.create_medicine(engine, current_profile(), _body())
        return jsonify({"success": True, "id": med_id}), 201

    @app.route("/api/portal/medicines/<medicine_id>", methods=["PUT"])
    @portal_route("medicines")
    @json_errors
    def put_medicine(medicine_id):
        prescriptions.update_medicine(engine, medicine_id, _body())
        return jsonify({"success": True}), 200

    @app.route("/api/portal/medicines/<medicine_id>", methods=["DELETE"])
    @portal_route("medicines")
    @json_errors
    def delete_medicine(medicine_id):
        prescriptions.delete_medicine(engine, medicine_id)
        return jsonify({"success": True}), 200

    # ── Billing ──────────────────────────────────────────────────────

    @app.route("/api/portal/billing", methods=["GET"])
    @portal_route("billing")
    @json_errors
    def get_invoices():
        items = billing.list_invoices(engine, build_scope(current_profile()), request.args.get("search"))
        payload = []
        for inv in items:
            out = as_json(inv)
            out["balance_due"] = float(billing.balance_due(inv.total_amount, inv.amount_paid))
            payload.append(out)
        return jsonify({"invoices": payload, "stats": as_json(billing.invoice_stats(items))}), 200

    @app.route("/api/portal/billing/totals", methods=["POST"])
    @portal_route("billing")
    @json_errors
    def post_totals():
        data = _body()
        lines = [InvoiceLine.from_dict(i) for i in (data.get("items") or [])]
        clinic_id = data.get("clinic_id") or current_profile().clinic_id
        lines = billing.reprice_lines(lines, catalog.price_lookup(catalog.priced_services(engine, clinic_id)))
        totals = billing.compute_totals(
            lines, data.get("doctor_fee"), data.get("status") or "unpaid", data.get("amount_paid"),
        )
        return jsonify({
            "items": [line.to_dict() for line in lines],
            "totals": totals.to_dict(),
        }), 200

    @app.route("/api/portal/billing", methods=["POST"])
    @portal_route("billing")
    @json_errors
    def post_invoice():
        data = _body()
        invoice = billing.create_invoice(engine, current_profile(), data)
        linked = None
        if data.get("prescription_id"):
            linked = prescriptions.get_prescription(engine, data["prescription_id"], build_scope(current_profile()))
        return jsonify({
            "invoice": as_json(invoice),
            "prescription": as_json(linked) if linked else None,
        }), 201

    @app.route("/api/portal/billing/<invoice_id>", methods=["GET"])
    @portal_route("billing")
    @json_errors
    def get_invoice(invoice_id):
        invoice = billing.get_invoice(engine, invoice_id, build_scope(current_profile()))
        linked = billing.latest_prescription_for(engine, invoice.patient_id)
        return jsonify({
            "invoice": as_json(invoice),
            "balance_due": float(billing.balance_due(invoice.total_amount, invoice.amount_paid)),
            "prescription": as_json(linked) if linked else None,
        }), 200

    @app.route("/api/portal/billing/<invoice_id>/payment", methods=["PUT"])
    @portal_route("billing")
    @json_errors
    def put_payment(invoice_id):
        data = _body()
        payment = billing.update_payment(
            engine, invoice_id, data.get("status") or "", data.get("amount_paid"),
            build_scope(current_profile()),
        )
        return jsonify({"status": payment.status, "amount_paid": float(payment.amount_paid)}), 200

    @app.route("/api/portal/billing/<invoice_id>/status", methods=["PUT"])
    @portal_route("billing")
    @json_errors
    def put_status(invoice_id):
        payment = billing.update_status(
            engine, invoice_id, _body().get("status") or "", build_scope(current_profile()),
        )
        return jsonify({"status": payment.status, "amount_paid": float(payment.amount_paid)}), 200

    @app.route("/api/portal/billing/<invoice_id>", methods=["DELETE"])
    @portal_route("billing")
    @json_errors
    def delete_invoice(invoice_id):
        billing.delete_invoice(engine, invoice_id, build_scope(current_profile()))
        return jsonify({"success": True}), 200

    def _invoice_fragment(invoice_id):
        invoice = billing.get_invoice(engine, invoice_id, build_scope(current_profile()))
        linked = billing.latest_prescription_for(engine, invoice.patient_id)
        return invoice, render_invoice_fragment(invoice, linked)

    @app.route("/api/portal/billing/<invoice_id>/print", methods=["GET"])
    @portal_route("billing")
    @json_errors
    def print_invoice(invoice_id):
        invoice, fragment = _invoice_fragment(invoice_id)
        return _html(render_print_document(fragment, f"Invoice-{document_number(invoice.id)}"))

    @app.route("/api/portal/billing/<invoice_id>/pdf", methods=["GET"])
    @portal_route("billing")
    @json_errors
    def pdf_invoice(invoice_id):
        invoice, fragment = _invoice_fragment(invoice_id)
        filename = f"Invoice-{document_number(invoice.id)}.pdf"
        return _html(render_pdf_document(fragment, filename), filename)

    # ── Services / clinic prices ─────────────────────────────────────

    @app.route("/api/portal/services", methods=["GET"])
    @portal_route("services")
    @json_errors
    def get_services():
        profile = current_profile()
        all_services = catalog.list_services(engine, active_only=False)
        overrides = catalog.list_clinic_prices(engine, profile.clinic_id) if profile.clinic_id else []
        priced = catalog.effective_prices(all_services, overrides)
        return jsonify([
            dict(item.to_dict(), is_active=item.service.is_active, sort_order=item.service.sort_order)
            for item in priced
        ]), 200

    @app.route("/api/portal/services", methods=["POST"])
    @portal_route("services")
    @json_errors
    def post_service():
        denied = _require_manager()
        if denied:
            return denied
        service_id = catalog.create_service(engine, _body())
        return jsonify({"success": True, "id": service_id}), 201

    @app.route("/api/portal/services/<service_id>", methods=["PUT"])
    @portal_route("services")
    @json_errors
    def put_service(service_id):
        denied = _require_manager()
        if denied:
            return denied
        catalog.update_service(engine, service_id, _body())
        return jsonify({"success": True}), 200

    @app.route("/api/portal/services/<service_id>/toggle", methods=["POST"])
    @portal_route("services")
    @json_errors
    def toggle_service(service_id):
        denied = _require_manager()
        if denied:
            return denied
        return jsonify({"is_active": catalog.toggle_service(engine, service_id)}), 200

    @app.route("/api/portal/services/<service_id>", methods=["DELETE"])
    @portal_route("services")
    @json_errors
    def delete_service(service_id):
        denied = _require_manager()
        if denied:
            return denied
        catalog.delete_service(engine, service_id)
        return jsonify({"success": True}), 200

    @app.route("/api/portal/services/prices/<clinic_id>", methods=["GET"])
    @portal_route("services")
    @json_errors
    def get_clinic_prices(clinic_id):
        return jsonify(as_json(catalog.list_clinic_prices(engine, clinic_id))), 200

    @app.route("/api/portal/services/prices/<clinic_id>", methods=["PUT"])
    @portal_route("services")
    @json_errors
    def put_clinic_prices(clinic_id):
        denied = _require_manager()
        if denied:
            return denied
        written = catalog.save_clinic_prices(engine, clinic_id, _body())
        return jsonify({"success": True, "saved": written}), 200

    @app.route("/api/portal/services/prices/<clinic_id>/<service_id>", methods=["DELETE"])
    @portal_route("services")
    @json_errors
    def delete_clinic_price(clinic_id, service_id):
        denied = _require_manager()
        if denied:
            return denied
        catalog.clear_clinic_price(engine, clinic_id, service_id)
        return jsonify({"success": True}), 200

    # ── Users / clinics ──────────────────────────────────────────────

    @app.route("/api/portal/users", methods=["GET"])
    @portal_route("users")
    @json_errors
    def get_users():
        members = records.list_users(
            engine, build_scope(current_profile()),
            search=request.args.get("search"), role=request.args.get("role"),
        )
        return jsonify([
            dict(m.profile.to_dict(), clinic_name=m.clinic.clinic_name if m.clinic else None)
            for m in members
        ]), 200

    @app.route("/api/portal/clinics", methods=["GET"])
    @portal_route("clinics")
    @json_errors
    def get_clinics():
        return jsonify(as_json(records.list_clinics(engine))), 200

    @app.route("/api/portal/clinics", methods=["POST"])
    @portal_route("clinics")
    @json_errors
    def post_clinic():
        return jsonify({"success": True, "id": records.save_clinic(engine, _body())}), 201

    @app.route("/api/portal/clinics/<clinic_id>", methods=["PUT"])
    @portal_route("clinics")
    @json_errors
    def put_clinic(clinic_id):
        records.save_clinic(engine, _body(), clinic_id)
        return jsonify({"success": True}), 200

    @app.route("/api/portal/clinics/<clinic_id>", methods=["DELETE"])
    @portal_route("clinics")
    @json_errors
    def delete_clinic(clinic_id):
        records.delete_clinic(engine, clinic_id)
        return jsonify({"success": True}), 200

    # ── Public ───────────────────────────────────────────────────────

    @app.route("/api/public/services", methods=["GET"])
    @json_errors
    def public_services():
        priced = catalog.priced_services(engine, request.args.get("clinic_id"))
        grouped = catalog.group_by_category(priced)
        return jsonify({
            category: [item.to_dict() for item in items]
            for category, items in grouped.items()
        }), 200

    # ── User provisioning function ───────────────────────────────────

    @app.route("/functions/v1/create-user", methods=["POST"])
    def create_user_function():
        if admin_client is None:
            return jsonify({"error": "User provisioning is not configured"}), 503
        status, payload = handle_provisioning(
            request.headers.get("Authorization"),
            request.get_json(silent=True),
            admin_client,
            engine,
        )
        return jsonify(payload), status

    # ── Error handlers ───────────────────────────────────────────────

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Endpoint not found", "message": str(e)}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"error": "Method not allowed", "message": str(e)}), 405

    @app.errorhandler(500)
    def internal_error(e):
        return jsonify({"error": "Internal server error", "message": str(e)}), 500
