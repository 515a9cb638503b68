# Overview: JSON rendering of order-core errors for the HTTP layer.

from flask import current_app, jsonify
from werkzeug.exceptions import HTTPException

from .services.errors import OrderCoreError


def error_response(exc: OrderCoreError):
    """{"error": message, "details": {...}} with the error's status code."""
    return jsonify({"error": exc.message, "details": exc.details}), exc.status_code


def register_error_handlers(app):
    """
    Safety net for errors that escape a route's own handling.

    Routes catch OrderCoreError themselves; these handlers keep every other
    response (404 on unknown URLs, 405, crashes) in the same JSON shape.
    """
    @app.errorhandler(OrderCoreError)
    def handle_order_core_error(exc):
        return error_response(exc)

    @app.errorhandler(HTTPException)
    def handle_http_error(exc):
        return jsonify({"error": exc.description, "details": {}}), exc.code

    @app.errorhandler(Exception)
    def handle_unexpected(exc):
        current_app.logger.exception("Unhandled error")
        return jsonify({"error": "Internal server error", "details": {}}), 500
