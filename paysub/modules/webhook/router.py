"""Gateway webhook endpoint."""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse

from paysub.core.container import ServiceContainer, get_services

router = APIRouter(prefix="/payments", tags=["Webhooks"])

SIGNATURE_HEADER = "X-Signature"


@router.post("/webhook", response_class=PlainTextResponse)
async def receive_payment_webhook(
    request: Request,
    services: ServiceContainer = Depends(get_services),
):
    """Receive a form-encoded payment notification from Peach.

    400 for an unparseable body, 401 for a bad signature. Anything after
    that answers 200 so the gateway stops redelivering.
    """
    raw_body = await request.body()
    await services.webhooks.ingest(
        raw_body,
        claimed_signature=request.headers.get(SIGNATURE_HEADER),
    )
    return PlainTextResponse("Webhook received")
