"""
app/__init__.py — Flask application factory.

Pattern: create_app(config_name) creates and returns a configured Flask app.
         Nothing is initialised at import time — this enables:
           - Multiple isolated test app instances
           - Clean separation between app creation and app startup
           - Alembic to import the metadata without starting the server

Responsibilities:
  1. Load configuration from config_by_name[config_name]
  2. Initialise extensions (SQLAlchemy, Marshmallow) via init_app()
  3. Build the immutable OAuthSettings once and store it, with the clock,
     in app.extensions
  4. Register the OAuth blueprints under /oauth and the `flask oauth` CLI
  5. Register global error handlers (AppError → JSON, storage → 503,
     Exception → 500)

Note on model imports:
  All model classes are imported inside create_app() so that SQLAlchemy's
  metadata is populated before Alembic inspects it. They are not used
  directly here — the import side-effect is sufficient.
"""

from __future__ import annotations

import traceback
from datetime import datetime

from flask import Flask, jsonify, request
from flask.json.provider import DefaultJSONProvider
from marshmallow import ValidationError
from werkzeug.exceptions import HTTPException
from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError

from authgrant.config import OAuthSettings, config_by_name, validate_production_config


# ── Custom JSON provider ───────────────────────────────────────────────────
# Flask's default provider renders datetimes as RFC 822 strings; the API
# uses ISO 8601 everywhere.

class ISOJSONProvider(DefaultJSONProvider):
    """
    Serialises datetime as ISO 8601 and sets/frozensets as sorted lists.

    Example: datetime(2024, 1, 2, 3, 4, 5, tzinfo=utc) → "2024-01-02T03:04:05+00:00"
    """

    def default(self, o):
        if isinstance(o, datetime):
            return o.isoformat()
        if isinstance(o, (set, frozenset)):
            return sorted(o)
        return super().default(o)


# ── Application factory ────────────────────────────────────────────────────

def create_app(config_name: str = "development") -> Flask:
    """
    Creates and returns a configured Flask application instance.

    Args:
        config_name: One of "development", "testing", "production".
                     Resolved via config_by_name in config.py.
                     Defaults to "development".

    Returns:
        A fully configured Flask app ready to serve requests.
    """
    app = Flask(__name__)
    app.json_provider_class = ISOJSONProvider
    app.json = ISOJSONProvider(app)

    # ── Configuration ──────────────────────────────────────────────────────
    config_class = config_by_name.get(config_name, config_by_name["development"])
    app.config.from_object(config_class)

    if config_name == "production":
        validate_production_config(app)  # raises ValueError if misconfigured

    # ── Extensions ─────────────────────────────────────────────────────────
    # Import here (not at module top) to avoid circular imports.
    from authgrant.app.extensions import db, ma
    db.init_app(app)
    ma.init_app(app)

    from authgrant.app.security import utcnow
    app.extensions["oauth_settings"] = OAuthSettings.from_mapping(app.config)
    # Replaceable in tests to move time forward.
    app.extensions["oauth_clock"] = utcnow

    # ── Model registration ─────────────────────────────────────────────────
    # Import all models so that SQLAlchemy's MetaData is populated.
    # The imports are intentionally unused by name — side effect is the point.
    with app.app_context():
        from authgrant.app.models import (  # noqa: F401
            access_token,
            audit_log,
            authorization_code,
            client,
            refresh_token,
            user_authorization,
        )

    # ── Blueprints / CLI ───────────────────────────────────────────────────
    _register_blueprints(app)

    from authgrant.app.cli import oauth_cli
    app.cli.add_command(oauth_cli)

    # ── Error handlers ─────────────────────────────────────────────────────
    _register_error_handlers(app)
    _register_cors(app)

    return app


def _register_blueprints(app: Flask) -> None:
    """
    Registers the route blueprints under /oauth.

    clients_bp is registered first so /oauth/clients is not shadowed by
    anything in oauth_bp.
    """
    from authgrant.app.routes.clients import clients_bp
    from authgrant.app.routes.oauth import oauth_bp

    app.register_blueprint(clients_bp, url_prefix="/oauth/clients")
    app.register_blueprint(oauth_bp,   url_prefix="/oauth")


def _register_error_handlers(app: Flask) -> None:
    """
    Registers global error handlers.

    Handlers:
      AppError         → structured JSON error envelope with the correct status
      ValidationError  → marshmallow errors as missing_field / invalid_field,
                         or the registered code carried in the message (400)
      OperationalError, InterfaceError, DisconnectionError
                       → temporarily_unavailable (503) with Retry-After, so an
                         unreachable database never looks like "not found"
      Exception        → server_error (500); full traceback logged

    Stack traces never leave the server. The traceback is written to the
    app logger.
    """
    from authgrant.app.errors import AppError, ErrorCode

    @app.errorhandler(AppError)
    def handle_app_error(error: AppError):
        """
        Converts an AppError raised anywhere in the request lifecycle
        (middleware, service, route) into the standard error envelope.

        Routes never catch AppError — they let it propagate here.
        """
        response = jsonify(error.to_dict())
        if error.http_status == 401 and error.code == ErrorCode.INVALID_CLIENT:
            response.headers["WWW-Authenticate"] = 'Basic realm="oauth"'
        return response, error.http_status

    @app.errorhandler(ValidationError)
    def handle_validation_error(error: ValidationError):
        """
        Converts marshmallow ValidationError into the standard error envelope.

        Marshmallow raises ValidationError with a messages dict keyed by field
        name. We return the FIRST error: one error, not many.

        A message that is itself a registered ErrorCode value (for example
        unsupported_grant_type) becomes the response code.
        """
        messages = error.messages  # e.g. {"grant_type": ["unsupported_grant_type"]}

        field = None
        raw_message = "Invalid input."

        if isinstance(messages, dict):
            for field_name, field_errors in messages.items():
                field = field_name if field_name != "_schema" else None

                if isinstance(field_errors, list):
                    raw_message = field_errors[0] if field_errors else "Invalid value."
                else:
                    raw_message = str(field_errors)
                break
        elif isinstance(messages, list):
            raw_message = messages[0] if messages else "Invalid input."

        code = _validation_code(str(raw_message))

        response_body = {
            "error": {
                "code": code,
                "message": _code_to_message(code) if raw_message == code else raw_message,
            }
        }
        if field is not None:
            response_body["error"]["field"] = field

        return jsonify(response_body), 400

    @app.errorhandler(OperationalError)
    @app.errorhandler(InterfaceError)
    @app.errorhandler(DisconnectionError)
    def handle_storage_unavailable(error: Exception):
        app.logger.error("Storage unavailable: %s", str(error))
        response = jsonify({
            "error": {
                "code": ErrorCode.TEMPORARILY_UNAVAILABLE,
                "message": "The service is temporarily unavailable. Please retry shortly.",
            }
        })
        response.headers["Retry-After"] = str(app.config.get("RETRY_AFTER_SECONDS", 5))
        return response, 503

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        """
        Catches all unhandled exceptions and returns a generic 500 response.

        The full traceback is logged to the application logger. Stack traces
        NEVER leave the server in the response body.
        """
        if isinstance(error, HTTPException):
            # 404 / 405 from routing keep their own status.
            return jsonify({
                "error": {
                    "code": ErrorCode.INVALID_REQUEST,
                    "message": error.description,
                }
            }), error.code

        app.logger.error(
            "Unhandled exception: %s\n%s",
            str(error),
            traceback.format_exc(),
        )
        return jsonify({
            "error": {
                "code": ErrorCode.INTERNAL_ERROR,
                "message": "An unexpected error occurred. Please try again later.",
            }
        }), 500


def _register_cors(app: Flask) -> None:
    """
    Adds CORS headers for browser-based local development.

    Enabled when DEBUG or TESTING is true so a consent UI served from another
    local port can call the API with Authorization headers.
    """

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        allow_all = bool(app.config.get("DEBUG") or app.config.get("TESTING"))

        if allow_all:
            response.headers["Access-Control-Allow-Origin"] = origin if origin else "*"
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Methods"] = "GET, POST, DELETE, OPTIONS"
            response.headers["Access-Control-Allow-Headers"] = "Authorization, Content-Type"

        return response


def _validation_code(message: str) -> str:
    """Maps a marshmallow message to a wire error code."""
    from authgrant.app.errors import ErrorCode

    if message in vars(ErrorCode).values():
        return message
    if message.startswith("Missing data for required field"):
        return ErrorCode.MISSING_FIELD
    return ErrorCode.INVALID_FIELD


def _code_to_message(code: str) -> str:
    """
    Returns a human-readable default message for a registered error code.
    Used when a ValidationError message IS the error code constant itself.
    """
    _messages = {
        "unsupported_grant_type": "grant_type must be 'authorization_code' or 'refresh_token'.",
        "unsupported_response_type": "response_type must be 'code'.",
    }
    return _messages.get(code, "Invalid input.")
