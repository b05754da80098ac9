"""
Cron trigger endpoints.

A scheduler calls these routes with ``Authorization: Bearer <CRON_SECRET>``
to run the hourly infrastructure billing job and the daily top-up
expiration sweep.

Usage::

    from craft_ledger.api.cron import create_app

    app = create_app(load_settings())
    # uvicorn.run(app, host="0.0.0.0", port=8000)
"""

import hmac
from typing import Any, Dict, Optional

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from craft_ledger.config.loader import Settings
from craft_ledger.core.collaborators import LoggingNotifier, LoggingPauser
from craft_ledger.core.expiration import ExpirationSweep
from craft_ledger.core.ledger import Ledger
from craft_ledger.core.metering import JobReport, MeteringOrchestrator
from craft_ledger.storage.repository import AccountRepository, ResourceRepository

logger = structlog.get_logger(__name__)


def _response(report: JobReport) -> Dict[str, Any]:
    body = report.to_dict()
    body.update({
        "success": True,
        "processed": report.total_processed,
        "errors": report.all_errors,
    })
    return body


def create_app(
    settings: Settings,
    orchestrator: Optional[MeteringOrchestrator] = None,
    sweep: Optional[ExpirationSweep] = None,
) -> FastAPI:
    """Create the cron application.

    Args:
        settings: Runtime settings (database, cron secret, environment)
        orchestrator: Metering orchestrator; built from settings when omitted
        sweep: Expiration sweep; built from settings when omitted

    Returns:
        A configured :class:`FastAPI` application.
    """
    if orchestrator is None or sweep is None:
        ledger = Ledger(settings.db_path, retry=settings.config.retry)
        accounts = AccountRepository(settings.db_path)
        notifier = LoggingNotifier()
        if orchestrator is None:
            orchestrator = MeteringOrchestrator(
                ledger,
                accounts,
                ResourceRepository(settings.db_path),
                notifier,
                LoggingPauser(),
                settings.config,
            )
        if sweep is None:
            sweep = ExpirationSweep(ledger, accounts, notifier, settings.config)

    app = FastAPI(title="Craft Ledger Cron", version="0.1.0")
    app.state.settings = settings
    app.state.orchestrator = orchestrator
    app.state.sweep = sweep

    def verify_cron_secret(request: Request) -> None:
        secret = settings.cron_secret
        if not secret:
            if settings.is_production:
                logger.error("cron_secret_missing")
                raise HTTPException(status_code=500, detail="Cron secret not configured")
            return
        expected = f"Bearer {secret}"
        provided = request.headers.get("authorization", "")
        if not hmac.compare_digest(provided.encode(), expected.encode()):
            logger.warning("cron_unauthorized", path=request.url.path)
            raise HTTPException(status_code=401, detail="Unauthorized")

    @app.get("/healthz")
    def healthz() -> Dict[str, str]:
        return {"status": "ok"}

    @app.api_route(
        "/api/cron/bill-infrastructure",
        methods=["GET", "POST"],
        dependencies=[Depends(verify_cron_secret)],
    )
    def bill_infrastructure(resume_after: Optional[str] = None):
        try:
            report = app.state.orchestrator.run_hourly(resume_after=resume_after)
        except Exception as e:
            logger.exception("cron_billing_failed")
            return JSONResponse(status_code=500, content={"success": False, "error": str(e)})
        return _response(report)

    @app.api_route(
        "/api/cron/expire-tokens",
        methods=["GET", "POST"],
        dependencies=[Depends(verify_cron_secret)],
    )
    def expire_tokens():
        try:
            report = app.state.sweep.run()
        except Exception as e:
            logger.exception("cron_expiration_failed")
            return JSONResponse(status_code=500, content={"success": False, "error": str(e)})
        return _response(report)

    return app
