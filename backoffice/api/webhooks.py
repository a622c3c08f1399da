"""
Payment provider webhook.

- POST /api/webhooks/payment-provider: signature-validated, idempotent

Signature failure -> 401 and nothing recorded. Unexpected processing failure
-> 500 so the provider retries. Everything else (including duplicates and
ignored event types) -> 200 with the outcome.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from starlette.concurrency import run_in_threadpool

from backoffice.api.deps import Services, get_services


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("/payment-provider")
async def payment_provider_webhook(
    request: Request,
    provider: Optional[str] = Query(None, description="flutterwave (default) or stripe"),
    services: Services = Depends(get_services),
):
    # Raw body is required for signature verification
    body = await request.body()
    # Gateway calls and ledger writes block, so they run off the event loop
    result = await run_in_threadpool(
        services.reconciler.handle_webhook, dict(request.headers), body, provider=provider
    )
    return {
        "received": True,
        "outcome": result.outcome,
        "status": result.status,
        "transaction_id": result.transaction_id,
        "subscription_id": result.subscription_id,
    }
