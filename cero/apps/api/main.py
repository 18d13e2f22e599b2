from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import Depends, FastAPI, Request

from cero.apps.api.errors import EXCEPTION_HANDLERS
from cero.apps.api.pipeline import admit_request
from cero.apps.api.route_table import unmapped_routes
from cero.apps.api.routes.admin_billing import router as admin_billing_router
from cero.apps.api.routes.api import router as api_router
from cero.apps.api.routes.auth import router as auth_router
from cero.apps.api.routes.health import router as health_router
from cero.apps.api.routes.pages import router as pages_router
from cero.apps.api.routes.reports import router as reports_router
from cero.core.config import get_settings
from cero.core.logging import configure_logging


logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    configure_logging()
    # Interactive docs stay off; only routes listed in the route table are served.
    app = FastAPI(
        title=get_settings().app_name,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        dependencies=[Depends(admit_request)],
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        response.headers.setdefault("X-Request-Id", request_id)
        logger.info(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
            request_id,
        )
        return response

    for exc_class, handler in EXCEPTION_HANDLERS:
        app.add_exception_handler(exc_class, handler)

    app.include_router(health_router)
    app.include_router(auth_router)
    app.include_router(pages_router)
    app.include_router(reports_router)
    app.include_router(admin_billing_router)
    app.include_router(api_router)

    missing = unmapped_routes(app.routes)
    if missing:
        raise RuntimeError(f"routes without an access policy: {', '.join(missing)}")
    return app


app = create_app()
