"""
Operator authentication for the sync API.

Operators authenticate per request with an ``X-Admin-Key`` header that must
match ``SYNC_ADMIN_API_KEY``. Flask-Login's request loader turns a valid key
into an ``Operator`` so views can rely on ``current_user``.
"""

from __future__ import annotations

import hmac
from http import HTTPStatus

from flask import current_app, jsonify
from flask_login import LoginManager, UserMixin, current_user

ADMIN_KEY_HEADER = "X-Admin-Key"
OPERATOR_HEADER = "X-Operator"


class Operator(UserMixin):
    """Authenticated caller of the operator endpoints."""

    def __init__(self, operator_id: str):
        self.id = operator_id

    def __repr__(self) -> str:
        return f"<Operator {self.id}>"


def init_login_manager(app) -> LoginManager:
    login_manager = LoginManager()
    login_manager.init_app(app)
    app.extensions["login_manager"] = login_manager

    @login_manager.user_loader
    def load_user(user_id):
        # Sessions are not used; every request re-authenticates with its key.
        return None

    @login_manager.request_loader
    def load_operator_from_request(request):
        expected = current_app.config.get("SYNC_ADMIN_API_KEY")
        supplied = request.headers.get(ADMIN_KEY_HEADER)
        if not expected or not supplied:
            return None
        if not hmac.compare_digest(str(expected), str(supplied)):
            current_app.logger.warning(
                "Rejected operator request with invalid admin key",
                extra={"sync_remote_addr": request.remote_addr, "sync_path": request.path},
            )
            return None
        operator_id = (request.headers.get(OPERATOR_HEADER) or "admin").strip() or "admin"
        return Operator(operator_id[:120])

    return login_manager


def ensure_operator_api():
    """Return an error response when the request is not from an operator."""
    if not current_app.config.get("SYNC_ADMIN_API_KEY"):
        return jsonify({"error": "Operator API key is not configured."}), HTTPStatus.SERVICE_UNAVAILABLE
    if not current_user.is_authenticated:
        return jsonify({"error": "Authentication required."}), HTTPStatus.UNAUTHORIZED
    return None


def operator_id() -> str | None:
    if current_user and current_user.is_authenticated:
        return str(current_user.id)
    return None
