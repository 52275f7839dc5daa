# Overview: Flask API routes for auth operations; parses input and returns JSON responses.

# backend/clinicscope/routes/auth.py
"""
Authentication API routes.

Login and logout are public: they run before (or instead of) scope
resolution and only touch session records.
"""

from flask import Blueprint, current_app, jsonify, request

from ..decorators import public_endpoint
from ..services import auth_service, session_service

auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


@auth_bp.post("/login")
@public_endpoint
def login_route():
    """
    Authenticate user and create session token.

    Body: {"username", "password", "tenant_code"?}. Platform administrators
    omit tenant_code.
    """
    try:
        data = request.get_json(silent=True) or {}
        username = data.get("username") or data.get("email")
        password = data.get("password")
        tenant_code = data.get("tenant_code")

        if not all([username, password]):
            return jsonify({"error": "username/email and password required"}), 400

        user = auth_service.authenticate(username, password, tenant_code=tenant_code)
        if not user:
            return jsonify({"error": "Invalid credentials"}), 401

        session, token = session_service.create_session(
            user_id=user.id,
            user_agent=request.headers.get("User-Agent"),
            ip_address=request.remote_addr,
        )

        return jsonify({
            "user": user.to_dict(),
            "token": token,
            "session": session.to_dict(),
            "message": "Login successful",
        }), 200

    except ValueError:
        return jsonify({"error": "Invalid credentials"}), 401
    except Exception:
        current_app.logger.exception("Failed to login user")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/logout")
@public_endpoint
def logout_route():
    """Revoke the bearer session token."""
    token = session_service.bearer_token()
    if not token:
        return jsonify({"error": "Authorization header required"}), 401

    if not session_service.revoke_session(token, reason="User logout"):
        return jsonify({"error": "Invalid or expired token"}), 401

    return jsonify({"message": "Logout successful"}), 200
