"""
Flask application factory and server entry-point.
"""

import os
import sys
import traceback

from flask import Flask
from flask_cors import CORS

from clinic_portal.auth_client import init_admin_client, init_auth_client
from clinic_portal.config import MAX_UPLOAD_BYTES, TOKEN_EXPIRY_HOURS
from clinic_portal.database import init_engine
from clinic_portal.storage import init_storage_client
from clinic_portal.api.routes import register_routes


def create_app(engine=None, auth_client=None, admin_client=None, storage=None):
    """Build and return a fully configured Flask application.

    Anything not passed in is built from the environment.
    """
    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = MAX_UPLOAD_BYTES + 1024 * 1024
    CORS(app)

    # ── Initialise shared resources ──────────────────────────────────
    try:
        if engine is None:
            print("[init] Initializing database connection...")
            engine = init_engine()

        if auth_client is None:
            print("[init] Initializing auth client...")
            auth_client = init_auth_client()

        if os.getenv("PLATFORM_SERVICE_KEY"):
            if admin_client is None:
                admin_client = init_admin_client()
            if storage is None:
                storage = init_storage_client()
        elif admin_client is None and storage is None:
            print("[WARN] PLATFORM_SERVICE_KEY not set; file storage and user provisioning disabled",
                  file=sys.stderr)

        print("[init] ✓ API server ready")
    except Exception as e:
        print(f"[FATAL] Failed to initialize: {e}", file=sys.stderr)
        traceback.print_exc()
        sys.exit(1)

    # ── Register routes ──────────────────────────────────────────────
    register_routes(app, engine, auth_client, admin_client, storage)

    return app


def main():
    """Run the development server."""
    print("=" * 60)
    print("Dental Clinic Portal – REST API Server")
    print("=" * 60)

    app = create_app()

    host = os.getenv("API_HOST", "0.0.0.0")
    port = int(os.getenv("API_PORT", "8000"))
    debug = os.getenv("FLASK_ENV") == "development"

    print(f"\n[server] Starting Flask API on {host}:{port}")
    print(f"[server] Debug mode: {debug}")
    print(f"[server] CORS enabled: True")
    print(f"[server] Session expiry: {TOKEN_EXPIRY_HOURS} hours")
    print("\nAPI Endpoints:")
    print(f"  - POST http://{host}:{port}/api/auth/login")
    print(f"  - POST http://{host}:{port}/api/auth/logout")
    print(f"  - GET  http://{host}:{port}/api/user/profile")
    print(f"  - GET  http://{host}:{port}/api/portal/<resource>")
    print(f"  - GET  http://{host}:{port}/api/public/services")
    print(f"  - POST http://{host}:{port}/functions/v1/create-user")
    print(f"  - GET  http://{host}:{port}/health")
    print("\n" + "=" * 60)

    app.run(host=host, port=port, debug=debug, threaded=True)


if __name__ == "__main__":
    main()
