"""
tests/unit/conftest.py — Shared setup for DB-free unit tests.

Unit tests build ORM objects (Loan, Payment, Stake) without a database.
SQLAlchemy resolves relationship targets by name the first time any model
is instantiated, so every model module must be imported up front, the same
way create_app() does.
"""

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
