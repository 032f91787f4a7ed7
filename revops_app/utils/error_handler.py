# revops_app/utils/error_handler.py

from http import HTTPStatus

from flask import jsonify
from werkzeug.exceptions import HTTPException

from revops_app.models import db


def register_error_handlers(app):
    """Install JSON error handlers for the API surface."""

    @app.errorhandler(404)
    def not_found_error(error):
        return jsonify({"error": "Not found"}), HTTPStatus.NOT_FOUND

    @app.errorhandler(405)
    def method_not_allowed_error(error):
        return jsonify({"error": "Method not allowed"}), HTTPStatus.METHOD_NOT_ALLOWED

    @app.errorhandler(500)
    def internal_error(error):
        db.session.rollback()
        app.logger.error("Unhandled server error: %s", error)
        return jsonify({"error": "Internal server error"}), HTTPStatus.INTERNAL_SERVER_ERROR

    @app.errorhandler(HTTPException)
    def http_error(error):
        return jsonify({"error": error.description or error.name}), error.code
