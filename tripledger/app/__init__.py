"""
app/__init__.py — Flask application factory.

Pattern: create_app(config_name) creates and returns a configured Flask app.
         Nothing is initialised at import time, so tests can build isolated
         app instances with their own database and collaborators.

Responsibilities:
  1. Load configuration from config_by_name[config_name]
  2. Initialise SQLAlchemy via init_app()
  3. Build the external collaborators (settlement network, rate cache,
     pricing service) and store them in app.extensions
  4. Register all route blueprints under /api/v1
  5. Register global error handlers (AppError → JSON, Exception → 500)
  6. Register a custom JSON provider to serialise Decimal as string

Note on model imports:
  All model classes are imported inside create_app() so that SQLAlchemy's
  metadata is populated before Alembic or db.create_all() inspects it.
"""

from __future__ import annotations

import traceback
from decimal import Decimal

from flask import Flask, jsonify, request
from flask.json.provider import DefaultJSONProvider
from marshmallow import ValidationError
from werkzeug.exceptions import HTTPException

from tripledger.config import config_by_name, validate_production_config


# ── Custom JSON provider ───────────────────────────────────────────────────
# Flask's default JSON encoder does not handle Decimal.
# Monetary amounts are serialised as strings to preserve precision.

class DecimalJSONProvider(DefaultJSONProvider):
    """
    Extends Flask's default JSON provider to serialise Decimal as str.

    Example: Decimal("10.50") → "10.50" (not 10.5 or 10.500000001)
    """

    def default(self, o):
        if isinstance(o, Decimal):
            return str(o)
        return super().default(o)


# ── Application factory ────────────────────────────────────────────────────

def create_app(config_name: str = "development", network=None, oracle=None) -> Flask:
    """
    Creates and returns a configured Flask application instance.

    Args:
        config_name: One of "development", "testing", "production".
        network:     SettlementNetwork to use instead of the configured one.
        oracle:      RateOracle to use instead of the HTTP oracle.

    Returns:
        A fully configured Flask app ready to serve requests.
    """
    app = Flask(__name__)
    app.json_provider_class = DecimalJSONProvider
    app.json = DecimalJSONProvider(app)

    # ── Configuration ──────────────────────────────────────────────────────
    config_class = config_by_name.get(config_name, config_by_name["development"])
    app.config.from_object(config_class)

    if config_name == "production":
        validate_production_config(app)  # raises ValueError if misconfigured

    # ── Extensions ─────────────────────────────────────────────────────────
    # Import here (not at module top) to avoid circular imports.
    from tripledger.app.extensions import db
    db.init_app(app)

    # ── Model registration ─────────────────────────────────────────────────
    # The imports are unused by name; registering the tables is the point.
    with app.app_context():
        from tripledger.app.models import (  # noqa: F401
            expense,
            group,
            loan,
            membership,
            payment,
            settlement,
            split,
            stake,
            user,
        )

    # ── Collaborators ──────────────────────────────────────────────────────
    _register_collaborators(app, network, oracle)

    # ── Blueprints ─────────────────────────────────────────────────────────
    _register_blueprints(app)

    # ── Error handlers ─────────────────────────────────────────────────────
    _register_error_handlers(app)
    _register_cors(app)

    return app


def _register_collaborators(app: Flask, network, oracle) -> None:
    """
    Stores the settlement network and pricing service in app.extensions.

    The rate cache lives as long as the app, so every request shares it.
    """
    from tripledger.app.clients.rate_oracle import HttpRateOracle
    from tripledger.app.clients.settlement_network import (
        InMemorySettlementNetwork,
        JsonRpcSettlementNetwork,
    )
    from tripledger.app.extensions import PRICING_SERVICE_KEY, SETTLEMENT_NETWORK_KEY
    from tripledger.app.services.pricing_service import PricingService, RateCache

    if network is None:
        if app.config["SETTLEMENT_NETWORK_BACKEND"] == "rpc":
            network = JsonRpcSettlementNetwork(app.config["SETTLEMENT_NETWORK_URL"])
        else:
            network = InMemorySettlementNetwork()

    if oracle is None:
        oracle = HttpRateOracle(
            app.config["RATE_ORACLE_URL"],
            timeout=app.config["RATE_ORACLE_TIMEOUT_SECONDS"],
        )

    rate_cache = RateCache(
        oracle,
        ttl_seconds=app.config["RATE_CACHE_TTL_SECONDS"],
        fallback_rates=app.config["FALLBACK_RATES"],
    )

    app.extensions[SETTLEMENT_NETWORK_KEY] = network
    app.extensions[PRICING_SERVICE_KEY] = PricingService(
        rate_cache,
        slippage_buffer_percent=app.config["SLIPPAGE_BUFFER_PERCENT"],
    )
    app.logger.info(
        "Settlement network: %s; rate oracle: %s",
        type(network).__name__, type(oracle).__name__,
    )


def _register_blueprints(app: Flask) -> None:
    """
    Registers all route blueprints under the /api/v1 prefix.

    The url_prefix is set here so individual route files only specify
    the path relative to their resource (e.g. "/" and "/<int:id>").
    """
    from tripledger.app.routes.balances import balances_bp
    from tripledger.app.routes.expenses import expenses_bp
    from tripledger.app.routes.groups import groups_bp
    from tripledger.app.routes.loans import loans_bp
    from tripledger.app.routes.payments import payments_bp
    from tripledger.app.routes.settlements import settlements_bp
    from tripledger.app.routes.stakes import stakes_bp
    from tripledger.app.routes.users import users_bp

    app.register_blueprint(users_bp,       url_prefix="/api/v1/users")
    app.register_blueprint(groups_bp,      url_prefix="/api/v1/groups")
    # expenses_bp and stakes_bp own both group-scoped paths and their own
    # id paths, so they sit directly under /api/v1.
    app.register_blueprint(expenses_bp,    url_prefix="/api/v1")
    app.register_blueprint(stakes_bp,      url_prefix="/api/v1")
    app.register_blueprint(balances_bp,    url_prefix="/api/v1/groups")
    app.register_blueprint(settlements_bp, url_prefix="/api/v1/groups")
    app.register_blueprint(payments_bp,    url_prefix="/api/v1/payments")
    app.register_blueprint(loans_bp,       url_prefix="/api/v1/loans")


def _register_error_handlers(app: Flask) -> None:
    """
    Registers global error handlers.

    Handlers:
      AppError        → structured JSON error envelope with the correct HTTP status
      ValidationError → marshmallow schema errors formatted as MISSING_FIELD /
                        INVALID_FIELD responses (400)
      Exception       → generic INTERNAL_ERROR (500); full traceback logged

    Stack traces never leave the server.
    """
    from tripledger.app.errors import AppError, ErrorCode, LedgerInconsistency

    @app.errorhandler(AppError)
    def handle_app_error(error: AppError):
        """
        Converts an AppError raised anywhere in the request lifecycle into
        the standard error envelope. Routes never catch AppError.
        """
        if isinstance(error, LedgerInconsistency):
            app.logger.critical("Ledger inconsistency on %s: %s", request.path, error.message)
        elif error.http_status >= 500:
            app.logger.error("%s on %s: %s", error.code, request.path, error.message)
        return jsonify(error.to_dict()), error.http_status

    @app.errorhandler(ValidationError)
    def handle_validation_error(error: ValidationError):
        """
        Converts marshmallow ValidationError into the standard error envelope.

        Only the FIRST error is returned. If the message is a registered
        ErrorCode constant it becomes the code; otherwise INVALID_FIELD or
        MISSING_FIELD is used.
        """
        messages = error.messages  # e.g. {"amount": ["INVALID_AMOUNT_PRECISION"]}

        field = None
        raw_message = "Invalid input."
        code = ErrorCode.INVALID_FIELD

        if isinstance(messages, dict):
            for field_name, field_errors in messages.items():
                field = field_name if field_name != "_schema" else None

                # Nested schemas (splits) report {index: {field: [...]}}.
                while isinstance(field_errors, dict) and field_errors:
                    field_errors = next(iter(field_errors.values()))

                if isinstance(field_errors, list):
                    raw_message = field_errors[0] if field_errors else "Invalid value."
                else:
                    raw_message = str(field_errors)
                break
        elif isinstance(messages, list):
            raw_message = messages[0] if messages else "Invalid input."

        if raw_message in vars(ErrorCode).values():
            code = raw_message
        elif str(raw_message).startswith("Missing data for required field"):
            code = ErrorCode.MISSING_FIELD

        response_body = {
            "error": {
                "code": code,
                "message": raw_message if raw_message not in vars(ErrorCode).values()
                else _code_to_message(code),
            }
        }
        if field is not None:
            response_body["error"]["field"] = field

        return jsonify(response_body), 400

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):
        """Unknown routes and wrong methods: 404 NOT_FOUND, 405 METHOD_NOT_ALLOWED."""
        return jsonify({
            "error": {
                "code": error.name.upper().replace(" ", "_"),
                "message": error.description,
            }
        }), error.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        """Catches all unhandled exceptions and returns a generic 500 response."""
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
    Adds CORS headers for browser-based local development when DEBUG or
    TESTING is true.
    """

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        if app.config.get("DEBUG") or app.config.get("TESTING"):
            response.headers["Access-Control-Allow-Origin"] = origin if origin else "*"
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Methods"] = "GET, POST, DELETE, OPTIONS"
            response.headers["Access-Control-Allow-Headers"] = "Content-Type"
        return response


def _code_to_message(code: str) -> str:
    """
    Default message for a ValidationError whose message IS an error code
    constant (e.g. INVALID_AMOUNT_PRECISION raised in schemas).
    """
    _messages = {
        "INVALID_AMOUNT_PRECISION": "Amount has more decimal places than the currency allows.",
        "INVALID_SPLIT_KIND": "split_kind must be EQUAL, PERCENTAGE or EXACT.",
        "DUPLICATE_SPLIT_USER": "The same user_id appears more than once in the splits array.",
        "UNSUPPORTED_CURRENCY": "The currency is not supported.",
    }
    return _messages.get(code, "Invalid input.")
