"""Billing provider webhooks. Every delivery is acknowledged with a 200."""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, Request

from routers.dependencies import get_ledger, get_webhook_reconciler
from services.ledger import Ledger
from services.subscriptions import WebhookReconciler

router = APIRouter()
logger = logging.getLogger(__name__)


async def _json_body(request: Request):
    raw = await request.body()
    try:
        return json.loads(raw or b"null")
    except ValueError:
        return None


def _tenant_from(header_value: Optional[str], payload: Any) -> Optional[str]:
    if header_value:
        return header_value
    if isinstance(payload, dict):
        value = payload.get("tenant_id") or payload.get("shop_domain")
        return str(value) if value else None
    return None


async def _offboard(ledger: Ledger, tenant_id: str, source: str) -> dict:
    try:
        removed = await ledger.offboard_tenant(tenant_id)
    except Exception:
        logger.exception("%s_cleanup_failed tenant=%s", source, tenant_id)
        return {}
    return removed


@router.post("/app-subscriptions")
async def app_subscriptions_update(
    request: Request,
    x_shop_domain: Optional[str] = Header(default=None),
    x_shopify_webhook_id: Optional[str] = Header(default=None),
    reconciler: WebhookReconciler = Depends(get_webhook_reconciler),
):
    payload = await _json_body(request)
    ack = await reconciler.handle(payload, tenant_id=x_shop_domain, delivery_id=x_shopify_webhook_id)
    return {
        "ok": ack.acknowledged,
        "applied": ack.applied,
        "duplicate": ack.duplicate,
        "detail": ack.detail,
    }


@router.post("/app-uninstalled")
async def app_uninstalled(
    request: Request,
    x_shop_domain: Optional[str] = Header(default=None),
    ledger: Ledger = Depends(get_ledger),
):
    payload = await _json_body(request)
    tenant_id = _tenant_from(x_shop_domain, payload)
    if not tenant_id:
        logger.warning("app_uninstalled_missing_tenant")
        return {"ok": True, "removed": {}}
    return {"ok": True, "removed": await _offboard(ledger, tenant_id, "app_uninstalled")}


@router.post("/gdpr")
async def gdpr_webhook(
    request: Request,
    x_shop_domain: Optional[str] = Header(default=None),
    x_shopify_topic: Optional[str] = Header(default=None),
    ledger: Ledger = Depends(get_ledger),
):
    """Privacy webhooks: ``shop/redact`` offboards the tenant, ``customers/redact``
    drops one end customer's audit entries, other topics are acknowledged."""
    payload = await _json_body(request)
    tenant_id = _tenant_from(x_shop_domain, payload)
    topic = (x_shopify_topic or (payload.get("topic") if isinstance(payload, dict) else None) or "").strip()
    if not tenant_id:
        logger.warning("gdpr_webhook_missing_tenant topic=%s", topic)
        return {"ok": True, "topic": topic}

    if topic == "shop/redact":
        return {"ok": True, "topic": topic, "removed": await _offboard(ledger, tenant_id, "shop_redact")}

    if topic == "customers/redact":
        customer = payload.get("customer") if isinstance(payload, dict) else None
        identifiers = []
        if isinstance(customer, dict):
            identifiers = [customer.get("id"), customer.get("email")]
        try:
            removed = await ledger.redact_customer(tenant_id, identifiers)
        except Exception:
            logger.exception("customers_redact_failed tenant=%s", tenant_id)
            removed = 0
        return {"ok": True, "topic": topic, "removed": {"consumption_audit_entries": removed}}

    logger.info("gdpr_webhook_acknowledged tenant=%s topic=%s", tenant_id, topic)
    return {"ok": True, "topic": topic}
