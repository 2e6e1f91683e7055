"""Unit-test conftest: DB isolation safety net.

Provides an ``autouse`` fixture that prevents any unit test from
accidentally opening a real database connection. This catches the
class of bugs where ``create_app()`` is called without handing it a
session factory first.

The approach:
1. Before every unit test, reset the storage module's global engine and
   session-factory singletons so they start from scratch.
2. Monkey-patch the storage accessors to raise if any code path
   attempts a real DB connection.

Tests that intentionally need DB access live in ``tests/integration/``
and are unaffected.
"""

from __future__ import annotations

import pytest

import invoice_reminder.storage as _storage_mod


def _guard(name: str):
    def _guarded(*args, **kwargs):
        raise RuntimeError(
            f"Unit test attempted a real DB connection via {name}(). "
            "Mock the database dependency or use tests/integration/ for DB tests."
        )

    return _guarded


@pytest.fixture(autouse=True)
def _isolate_db(monkeypatch: pytest.MonkeyPatch) -> None:
    """Prevent unit tests from reaching a real database."""
    monkeypatch.setattr(_storage_mod, "_engine", None)
    monkeypatch.setattr(_storage_mod, "_session_factory", None)

    for name in ("get_engine", "get_session_factory", "init_db"):
        monkeypatch.setattr(_storage_mod, name, _guard(name))
