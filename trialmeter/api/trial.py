"""
Trial lifecycle API.

- POST /api/trial/tenants: Start a trial
- GET  /api/trial/{tenant_id}/status: Dashboard snapshot
- GET  /api/trial/{tenant_id}/gate: Pre-call gate for the voice provider
- POST /api/trial/{tenant_id}/convert: Convert now (end trial, charge)
- POST /api/trial/{tenant_id}/cancel: Cancel the trial
- POST /api/trial/{tenant_id}/period-end: Scheduler hook at trial end
"""
from typing import Optional

from fastapi import APIRouter, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from trialmeter.features.billing.provider import BillingProviderError, BillingRejectedError, BillingTransientError
from trialmeter.features.trial import service as trial_service
from trialmeter.models.snapshot import BlockSnapshot, CallGateDecision
from trialmeter.models.tenant import Tenant
from trialmeter.models.trial import ConversionErrorKind, ConversionResult, TransitionResult


router = APIRouter(prefix="/api/trial", tags=["trial"])

# ConversionResult.error_kind -> HTTP status
CONVERSION_STATUS_CODES = {
    ConversionErrorKind.CONFLICT: 409,
    ConversionErrorKind.REJECTED: 402,
    ConversionErrorKind.RETRYABLE: 503,
}


class StartTrialRequest(BaseModel):
    tenant_id: str = Field(min_length=1, max_length=100)
    variant_key: Optional[str] = None
    billing_account_ref: Optional[str] = None
    billing_subscription_ref: Optional[str] = None


def _conversion_response(result: ConversionResult) -> JSONResponse:
    status_code = 200 if result.success else CONVERSION_STATUS_CODES[result.error_kind]
    return JSONResponse(status_code=status_code, content=result.model_dump(mode="json"))


@router.post("/tenants", response_model=Tenant, status_code=201)
def start_trial(body: StartTrialRequest):
    """Start a trial (idempotent per tenant_id)."""
    return trial_service.start_trial(
        body.tenant_id,
        variant_key=body.variant_key,
        billing_account_ref=body.billing_account_ref,
        billing_subscription_ref=body.billing_subscription_ref,
    )


@router.get("/{tenant_id}/status", response_model=BlockSnapshot)
def get_status(tenant_id: str):
    return trial_service.get_block_snapshot(tenant_id)


@router.get("/{tenant_id}/gate", response_model=CallGateDecision)
def get_gate(tenant_id: str):
    """Whether the tenant may place another call right now."""
    return trial_service.check_call_allowed(tenant_id)


@router.post("/{tenant_id}/convert", response_model=ConversionResult)
def convert_now(tenant_id: str):
    """
    End the trial now and start paid billing.

    Returns:
        200: converted (or already converted)
        402: billing rejected the charge
        409: tenant canceled
        502: billing misconfigured
        503: billing unavailable or tenant busy; retry
    """
    try:
        return _conversion_response(trial_service.convert_now(tenant_id))
    except BillingProviderError as e:
        raise HTTPException(status_code=502, detail=str(e))


@router.post("/{tenant_id}/period-end", response_model=ConversionResult)
def period_end(tenant_id: str):
    """Settle a trial whose period is over (auto-convert or block)."""
    try:
        return _conversion_response(trial_service.handle_trial_period_end(tenant_id))
    except BillingProviderError as e:
        raise HTTPException(status_code=502, detail=str(e))


@router.post("/{tenant_id}/cancel", response_model=TransitionResult)
def cancel(tenant_id: str):
    """
    Cancel a trialing or blocked tenant.

    Errors:
        409: Tenant already converted
        402: Billing refused the cancellation
        503: Billing unavailable (retry)
    """
    try:
        return trial_service.cancel_trial(tenant_id)
    except BillingTransientError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except BillingRejectedError as e:
        raise HTTPException(status_code=402, detail=str(e))
    except BillingProviderError as e:
        raise HTTPException(status_code=502, detail=str(e))
