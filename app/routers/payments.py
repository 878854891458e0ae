from fastapi import APIRouter, Depends, Header, Request

from app.services import payments as payments_service
from app.services.notifications import Notifier, get_notifier

router = APIRouter()


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
    notifier: Notifier = Depends(get_notifier),
):
    """Stripe webhook: checkout.session.completed -> grant credits or forward book order (idempotent)."""
    body = await request.body()
    return await payments_service.handle_webhook(body, stripe_signature, notifier=notifier)
