from fastapi import APIRouter, Depends, Header, HTTPException, Request
import secrets
import structlog

from billing_engine.shared.core.config import get_settings
from billing_engine.shared.core.logging import audit_log

router = APIRouter(prefix="/admin/billing", tags=["Billing Lifecycle"])
logger = structlog.get_logger()


async def verify_admin_key(request: Request, x_admin_key: str = Header(..., alias="X-Admin-Key")) -> None:
    settings = get_settings()

    if not settings.ADMIN_API_KEY:
        logger.error("admin_key_not_configured")
        raise HTTPException(
            status_code=503,
            detail="Admin endpoint not configured. Set ADMIN_API_KEY."
        )

    if not secrets.compare_digest(x_admin_key, settings.ADMIN_API_KEY):
        client_ip = request.client.host if request.client else "unknown"
        audit_log("admin_auth_failed", "admin_portal", "unknown", {"path": request.url.path, "ip": client_ip})
        logger.warning("admin_auth_failed", ip=client_ip)
        raise HTTPException(status_code=403, detail="Forbidden")


def _scheduler(request: Request):
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Billing scheduler is not configured.")
    return scheduler


@router.post("/validations/run", dependencies=[Depends(verify_admin_key)])
async def run_validations(request: Request):
    """Run one validation pass now and return its summary."""
    logger.info("manual_validation_requested")
    summary = await _scheduler(request).run_validations_once()
    if summary is None:
        raise HTTPException(status_code=500, detail="Validation run failed; see logs.")
    return {"status": "completed", "summary": summary}


@router.post("/renewals/run", dependencies=[Depends(verify_admin_key)])
async def run_renewals(request: Request):
    """Run one renewal pass now and return its summary."""
    logger.info("manual_renewal_requested")
    summary = await _scheduler(request).run_renewal_tasks_once()
    if summary is None:
        raise HTTPException(status_code=500, detail="Renewal run failed; see logs.")
    return {"status": "completed", "summary": summary}


@router.get("/scheduler/status", dependencies=[Depends(verify_admin_key)])
async def scheduler_status(request: Request):
    return _scheduler(request).get_scheduler_status()


@router.post("/payments/{charge_id}/reconcile", dependencies=[Depends(verify_admin_key)])
async def reconcile_payment(charge_id: str, request: Request):
    """
    Manual reconciliation of one gateway charge.
    Same path as an inbound notification, so repeating it is harmless.
    """
    reconciler = getattr(request.app.state, "reconciler", None)
    if reconciler is None:
        raise HTTPException(status_code=503, detail="Payment gateway is not configured.")

    outcome = await reconciler.on_payment_notification(charge_id)
    logger.info("manual_reconcile_completed", charge_id=charge_id, outcome=outcome.value)
    return {"charge_id": charge_id, "outcome": outcome.value}
