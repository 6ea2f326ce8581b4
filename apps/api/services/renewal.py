"""Monthly renewal policy: reset balances to the plan quota at period rollover."""

from __future__ import annotations

import logging

from services.errors import TenantNotFound
from services.ledger import Ledger

logger = logging.getLogger(__name__)


class RenewalPolicy:
    """Decide on each ledger touch whether the tenant crossed a period boundary.

    Renewal replaces the balance with ``monthly_quota``; a tenant without a
    paid plan (quota 0) is clamped to 0. The reset itself is conditional on
    the stored period, so concurrent callers converge on a single reset.
    """

    def __init__(self, ledger: Ledger):
        self._ledger = ledger

    async def apply(self, tenant_id: str) -> int:
        """Renew ``tenant_id`` if needed and return the resulting balance."""
        account = await self._ledger.get_account(tenant_id)
        if account is None:
            raise TenantNotFound(tenant_id)

        period = self._ledger.current_period()
        if account.last_reset_period is not None and account.last_reset_period >= period:
            return int(account.balance)

        logger.debug(
            "renewal_due tenant=%s last_period=%s period=%s quota=%s",
            tenant_id,
            account.last_reset_period,
            period,
            account.monthly_quota,
        )
        return await self._ledger.reset_to_quota(tenant_id, period)

    async def sweep(self) -> int:
        """Renew every account that is still on an older period."""
        period = self._ledger.current_period()
        renewed = await self._ledger.reset_all_to_quota(period)
        if renewed:
            logger.info("renewal_sweep period=%s renewed=%s", period, renewed)
        return renewed
