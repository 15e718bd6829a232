"""
Settlement webhook endpoints

Both rails are answered as soon as the event is authenticated; the event is
applied afterwards in a background task.
"""

from fastapi import APIRouter, BackgroundTasks, Depends, Request

from .auth import WalletSystem, get_wallet_system
from .errors import error_response
from ..exceptions import SignatureMismatch


router = APIRouter()


@router.post("/interbank")
async def interbank_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    system: WalletSystem = Depends(get_wallet_system)
):
    """Transfer settlement events from the inter-bank switch"""
    raw_body = await request.body()
    try:
        event = system.webhook_processor.authenticate_interbank(request.headers.get("authorization"), raw_body)
    except SignatureMismatch:
        return error_response(401, "Unauthorized")

    background_tasks.add_task(system.webhook_processor.process, event)
    return {"status": True, "message": "Webhook received"}


@router.post("/card")
async def card_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    system: WalletSystem = Depends(get_wallet_system)
):
    """Charge events from the card processor"""
    raw_body = await request.body()
    event = system.webhook_processor.authenticate_card(request.headers.get("x-paystack-signature"), raw_body)

    background_tasks.add_task(system.webhook_processor.process, event)
    return {"status": True, "message": "Webhook received"}
