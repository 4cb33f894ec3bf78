# Overview: One place where engine errors become HTTP responses.

from flask import jsonify, current_app
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from werkzeug.exceptions import HTTPException

from ..errors import EngineError


def register_error_handlers(app):
    @app.errorhandler(EngineError)
    def handle_engine_error(exc: EngineError):
        if exc.http_status >= 500:
            current_app.logger.error("%s: %s", exc.code, exc.message)
        return jsonify(exc.to_dict()), exc.http_status

    @app.errorhandler(OperationalError)
    def handle_operational_error(exc):
        current_app.logger.exception("Database unavailable")
        return jsonify({"error": "Database unavailable", "code": "SERVICE_UNAVAILABLE", "details": {}}), 503

    @app.errorhandler(SQLAlchemyError)
    def handle_database_error(exc):
        current_app.logger.exception("Database error")
        return jsonify({"error": "Internal server error", "code": "INTERNAL_ERROR", "details": {}}), 500

    @app.errorhandler(HTTPException)
    def handle_http_exception(exc):
        return jsonify({"error": exc.description, "code": exc.name.upper().replace(" ", "_"), "details": {}}), exc.code

    @app.errorhandler(Exception)
    def handle_unexpected(exc):
        current_app.logger.exception("Unhandled error")
        return jsonify({"error": "Internal server error", "code": "INTERNAL_ERROR", "details": {}}), 500
