"""Payments API."""
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from esim_app.config import settings
from esim_app.core.dependencies import get_qpay_service, get_roamwifi_service
from esim_app.database import get_db
from esim_app.services.order_service import OrderNotFoundError, OrderService
from esim_app.services.qpay_service import QPayService
from esim_app.services.roamwifi_service import RoamWiFiService
from esim_app.services.webhook_service import WebhookPayloadError, parse_qpay_webhook

logger = logging.getLogger(__name__)

router = APIRouter()

SIGNATURE_HEADER = "X-QPay-Signature"


@router.post("/webhook/qpay")
async def qpay_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    qpay: QPayService = Depends(get_qpay_service),
    roamwifi: RoamWiFiService = Depends(get_roamwifi_service),
):
    """
    Webhook для обработки событий оплаты от QPay.

    Повторная доставка безопасна: заказ не меняется и eSIM не выпускается второй раз.
    """
    logger.info("=== QPay Webhook received ===")

    try:
        event_data = await request.json()
    except ValueError as e:
        logger.error(f"❌ Failed to parse JSON: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON",
        )
    logger.debug(f"Event data: {json.dumps(event_data, ensure_ascii=False)}")

    signature = request.headers.get(SIGNATURE_HEADER)
    if signature:
        if not isinstance(event_data, dict) or not qpay.verify_webhook_signature(event_data, signature):
            logger.error("❌ Invalid webhook signature!")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid signature",
            )
    elif settings.qpay_require_webhook_signature:
        logger.error("❌ Webhook signature header missing")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing signature",
        )
    else:
        logger.warning("⚠️ Signature header missing - skipping signature validation")

    try:
        event = parse_qpay_webhook(event_data)
    except WebhookPayloadError as e:
        logger.error(f"❌ Invalid webhook payload: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        )

    service = OrderService(db, qpay=qpay, roamwifi=roamwifi)
    try:
        order = await service.process_payment_webhook(event)
    except OrderNotFoundError as e:
        logger.warning(f"Webhook for unknown order: {e}")
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e),
        )

    logger.info(f"✅ Webhook processed: order {order.order_number}, status: {order.status}")
    return {"ok": True, "order_number": order.order_number, "status": order.status}
