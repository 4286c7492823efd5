"""
Gateway notification endpoints (CloudPayments).

- POST /api/webhooks/cloudpayments/pay
- POST /api/webhooks/cloudpayments/recurrent
- POST /api/webhooks/cloudpayments/fail

The gateway reads the JSON code, not the HTTP status: 0 means accepted,
13 means not accepted (retry). Storage failures surface as HTTP 500.
"""
from fastapi import APIRouter, Request
from starlette.concurrency import run_in_threadpool

from mattrainer.features.billing.provider import WebhookSignatureError
from mattrainer.features.billing.service import process_notification

CODE_ACCEPTED = 0
CODE_NOT_ACCEPTED = 13

router = APIRouter(prefix="/webhooks/cloudpayments", tags=["webhooks"])


async def _handle(kind: str, request: Request) -> dict:
    # Raw body, never re-serialized before verification
    body = await request.body()
    try:
        # Storage and gateway calls block; keep them off the event loop
        await run_in_threadpool(process_notification, kind, body, request.headers)
    except WebhookSignatureError:
        return {"code": CODE_NOT_ACCEPTED}
    return {"code": CODE_ACCEPTED}


@router.post("/pay")
async def pay(request: Request):
    """Payment succeeded notification."""
    return await _handle("pay", request)


@router.post("/recurrent")
async def recurrent(request: Request):
    """Recurring subscription status changed notification."""
    return await _handle("recurrent", request)


@router.post("/fail")
async def fail(request: Request):
    """Payment failed notification."""
    return await _handle("fail", request)
