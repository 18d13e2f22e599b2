from __future__ import annotations

import pytest

from cero.apps.api.main import create_app
from cero.apps.api.route_table import ADMIN, PUBLIC, ROUTE_TABLE, SESSION, policy_for, unmapped_routes


def test_every_mounted_route_has_a_policy() -> None:
    assert unmapped_routes(create_app().routes) == []


def test_policy_lookup() -> None:
    assert policy_for("get", "/login") == PUBLIC
    assert policy_for("POST", "/reports/generate") == SESSION
    assert policy_for("GET", "/api/v1/admin/accounts/{account_id}/ledger") == ADMIN
    assert policy_for("DELETE", "/login") is None
    assert ADMIN.needs_session and ADMIN.needs_admin
    assert SESSION.needs_session and not SESSION.needs_admin
    assert not PUBLIC.needs_session


def test_route_table_is_read_only() -> None:
    with pytest.raises(TypeError):
        ROUTE_TABLE[("GET", "/new")] = PUBLIC  # type: ignore[index]
