"""
extensions.py — Flask extension singletons.

Initialises SQLAlchemy as a module-level object so it can be imported
anywhere without creating circular dependencies.

Pattern:
    1. Create the extension object here (no app attached yet).
    2. Call init_app(app) inside the app factory in app/__init__.py.
    3. Import `db` from here wherever needed.

    from tripledger.app.extensions import db

Do not pass the app object directly to SQLAlchemy() at import time; that
would prevent running tests with a separate test app instance.

The settlement network client and the pricing service are not extensions in
the Flask sense; the factory stores them in app.extensions under the keys
below and routes look them up through current_app.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

SETTLEMENT_NETWORK_KEY = "tripledger.settlement_network"
PRICING_SERVICE_KEY = "tripledger.pricing_service"
