from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterable, Mapping

from fastapi.routing import APIRoute

from cero.apps.api.response import API_PREFIX


ACCESS_PUBLIC = "public"
ACCESS_SESSION = "requires_session"
ACCESS_ADMIN = "requires_admin_role"


@dataclass(frozen=True)
class RoutePolicy:
    access: str

    @property
    def needs_session(self) -> bool:
        return self.access in {ACCESS_SESSION, ACCESS_ADMIN}

    @property
    def needs_admin(self) -> bool:
        return self.access == ACCESS_ADMIN


PUBLIC = RoutePolicy(ACCESS_PUBLIC)
SESSION = RoutePolicy(ACCESS_SESSION)
ADMIN = RoutePolicy(ACCESS_ADMIN)

# Keyed by (method, path template); never modified after import.
ROUTE_TABLE: Mapping[tuple[str, str], RoutePolicy] = MappingProxyType(
    {
        ("GET", "/"): PUBLIC,
        ("GET", "/health"): PUBLIC,
        ("GET", "/login"): PUBLIC,
        ("POST", "/login"): PUBLIC,
        ("GET", "/logout"): PUBLIC,
        ("GET", "/dashboard"): SESSION,
        ("GET", "/billing"): SESSION,
        ("GET", "/reports"): SESSION,
        ("POST", "/reports/generate"): SESSION,
        ("GET", "/reports/export"): SESSION,
        ("GET", "/admin/billing"): ADMIN,
        ("POST", "/admin/billing/mark-paid"): ADMIN,
        ("POST", "/admin/billing/update"): ADMIN,
        ("POST", "/admin/search"): ADMIN,
        ("GET", f"{API_PREFIX}/subscription"): SESSION,
        ("GET", f"{API_PREFIX}/billing/events"): SESSION,
        ("GET", f"{API_PREFIX}/admin/accounts/{{account_id}}/ledger"): ADMIN,
    }
)


def policy_for(method: str, path_template: str) -> RoutePolicy | None:
    return ROUTE_TABLE.get((method.upper(), path_template))


def unmapped_routes(routes: Iterable[object]) -> list[str]:
    # Every mounted API route must appear in the table; report the ones that do not.
    missing: list[str] = []
    for route in routes:
        if not isinstance(route, APIRoute):
            continue
        for method in sorted(route.methods):
            if policy_for(method, route.path) is None:
                missing.append(f"{method} {route.path}")
    return missing
