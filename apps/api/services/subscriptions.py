"""Webhook reconciler for subscription lifecycle events.

Deliveries are at-least-once and may arrive out of order. Each delivery is
deduplicated by its own identity (explicit event id, or subscription id +
status + version or delivery id); no ordering between events is enforced.
"""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.account import SubscriptionStatus
from models.subscription_event import SubscriptionEvent
from services.errors import WebhookPayloadInvalid
from services.ledger import (
    Ledger,
    apply_activation,
    apply_demotion,
    ensure_account_row,
    insert_or_ignore,
    read_account,
)

logger = logging.getLogger(__name__)

_QUOTA_IN_NAME = re.compile(r"(\d+)\s*try-ons?", re.IGNORECASE)
DEMOTING_STATUSES = {
    SubscriptionStatus.CANCELLED.value,
    SubscriptionStatus.EXPIRED.value,
    SubscriptionStatus.DECLINED.value,
}


class SubscriptionWebhookEvent(BaseModel):
    tenant_id: str = Field(min_length=1)
    subscription_id: str = Field(min_length=1)
    status: str = Field(min_length=1)
    event_id: Optional[str] = None
    plan_quota: Optional[int] = Field(default=None, ge=0)
    plan_name: Optional[str] = None
    version: Optional[str] = None
    delivery_id: Optional[str] = None

    @field_validator("status")
    @classmethod
    def _normalize_status(cls, value: str) -> str:
        return value.strip().upper()

    @property
    def event_key(self) -> str:
        if self.event_id:
            return self.event_id
        if self.version:
            return f"{self.subscription_id}:{self.status}:{self.version}"
        if self.delivery_id:
            return f"{self.subscription_id}:{self.status}:delivery:{self.delivery_id}"
        return f"{self.subscription_id}:{self.status}:"


def quota_from_plan_name(name: Optional[str]) -> Optional[int]:
    """Extract the monthly quota from names like ``"Starter - 50 try-ons/month"``."""
    match = _QUOTA_IN_NAME.search(name or "")
    return int(match.group(1)) if match else None


def parse_subscription_event(
    payload: Any,
    tenant_id: Optional[str] = None,
    delivery_id: Optional[str] = None,
) -> SubscriptionWebhookEvent:
    """Validate a webhook body.

    Accepts the flat event shape as well as the billing provider's
    ``{"app_subscription": {...}}`` envelope, where the tenant comes from the
    delivery headers.
    """
    if not isinstance(payload, Mapping):
        raise WebhookPayloadInvalid("Webhook body must be a JSON object.")

    data = dict(payload)
    envelope = data.get("app_subscription")
    if envelope is not None:
        if not isinstance(envelope, Mapping):
            raise WebhookPayloadInvalid("app_subscription must be an object.")
        data = {
            "tenant_id": tenant_id or envelope.get("tenant_id"),
            "subscription_id": envelope.get("admin_graphql_api_id") or envelope.get("id"),
            "status": envelope.get("status"),
            "plan_name": envelope.get("name"),
            "plan_quota": envelope.get("plan_quota"),
            "version": envelope.get("updated_at"),
            "event_id": data.get("event_id"),
        }
    elif tenant_id and not data.get("tenant_id"):
        data["tenant_id"] = tenant_id

    if data.get("subscription_id") is not None:
        data["subscription_id"] = str(data["subscription_id"])
    if delivery_id and not data.get("delivery_id"):
        data["delivery_id"] = delivery_id
    try:
        event = SubscriptionWebhookEvent.model_validate(data)
    except ValidationError as exc:
        raise WebhookPayloadInvalid(str(exc)) from exc
    if not (event.event_id or event.version or event.delivery_id):
        logger.warning(
            "subscription_webhook_without_identity tenant=%s subscription=%s status=%s",
            event.tenant_id,
            event.subscription_id,
            event.status,
        )
    return event


@dataclass(frozen=True)
class WebhookAck:
    """Always-positive acknowledgement returned to the billing provider."""

    acknowledged: bool = True
    applied: bool = False
    duplicate: bool = False
    balance: Optional[int] = None
    monthly_quota: Optional[int] = None
    detail: Optional[str] = None


class WebhookReconciler:
    def __init__(self, ledger: Ledger, *, free_tier_quota: Optional[int] = None):
        self._ledger = ledger
        self._free_tier_quota = int(settings.FREE_TIER_QUOTA if free_tier_quota is None else free_tier_quota)

    async def handle(
        self,
        payload: Any,
        tenant_id: Optional[str] = None,
        delivery_id: Optional[str] = None,
    ) -> WebhookAck:
        """Parse and apply a delivery. Never raises: failures are logged and acknowledged."""
        try:
            event = parse_subscription_event(payload, tenant_id=tenant_id, delivery_id=delivery_id)
        except WebhookPayloadInvalid as exc:
            logger.warning("subscription_webhook_invalid tenant=%s error=%s", tenant_id, exc)
            return WebhookAck(detail="invalid_payload")

        try:
            return await self.apply(event)
        except Exception:
            logger.exception(
                "subscription_webhook_failed tenant=%s subscription=%s status=%s",
                event.tenant_id,
                event.subscription_id,
                event.status,
            )
            return WebhookAck(detail="processing_error")

    async def apply(self, event: SubscriptionWebhookEvent) -> WebhookAck:
        period = self._ledger.current_period()
        free_tier_quota = self._free_tier_quota

        async def _apply(session: AsyncSession) -> WebhookAck:
            await ensure_account_row(session, event.tenant_id, period)
            claimed = await insert_or_ignore(
                session,
                SubscriptionEvent,
                {
                    "id": str(uuid.uuid4()),
                    "event_key": event.event_key,
                    "subscription_id": event.subscription_id,
                    "tenant_id": event.tenant_id,
                    "status": event.status,
                },
                ["event_key"],
            )
            if not claimed:
                return WebhookAck(duplicate=True, detail="duplicate_event")

            if event.status == SubscriptionStatus.ACTIVE.value:
                quota = event.plan_quota
                if quota is None:
                    quota = quota_from_plan_name(event.plan_name)
                if quota is None:
                    account = await read_account(session, event.tenant_id, for_update=True)
                    quota = int(account.monthly_quota or 0)
                balance = await apply_activation(
                    session, event.tenant_id, quota, subscription_id=event.subscription_id
                )
                return WebhookAck(applied=True, balance=balance, monthly_quota=quota)

            if event.status in DEMOTING_STATUSES:
                balance = await apply_demotion(
                    session,
                    event.tenant_id,
                    free_tier_quota,
                    SubscriptionStatus(event.status),
                    subscription_id=event.subscription_id,
                )
                return WebhookAck(applied=True, balance=balance, monthly_quota=free_tier_quota)

            return WebhookAck(detail=f"status_ignored:{event.status}")

        ack = await self._ledger.run_atomic(_apply)
        if ack.duplicate:
            logger.warning(
                "subscription_webhook_duplicate tenant=%s event=%s", event.tenant_id, event.event_key
            )
        elif ack.applied:
            logger.info(
                "subscription_webhook_applied tenant=%s subscription=%s status=%s quota=%s balance=%s",
                event.tenant_id,
                event.subscription_id,
                event.status,
                ack.monthly_quota,
                ack.balance,
            )
        else:
            logger.info(
                "subscription_webhook_noop tenant=%s subscription=%s status=%s",
                event.tenant_id,
                event.subscription_id,
                event.status,
            )
        return ack
