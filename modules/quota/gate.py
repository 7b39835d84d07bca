"""Admission control in front of provider submission."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from modules.pipelines.errors import QuotaExceededError
from modules.quota.ledgers import AccountCreditLedger, GuestQuotaLedger, Identity

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class QuotaDecision:
    allowed: bool
    remaining: int


class QuotaGate:
    """Decide whether an identity may generate, and charge it when it does.

    ``commit`` is called after ``check`` allowed the request and before the
    provider is contacted; the charge is never reversed.
    """

    def __init__(self, guests: GuestQuotaLedger, credits: Optional[AccountCreditLedger] = None) -> None:
        self.guests = guests
        self.credits = credits

    def check(self, identity: Identity) -> QuotaDecision:
        if identity.is_guest:
            self.guests.purge()
            remaining = self.guests.remaining(identity.value)
            return QuotaDecision(allowed=remaining > 0, remaining=remaining)

        balance = self.credits.balance(identity.value) if self.credits else None
        if balance is None:
            return QuotaDecision(allowed=False, remaining=0)
        return QuotaDecision(allowed=balance >= self.credits.cost, remaining=balance)

    def commit(self, identity: Identity) -> bool:
        if identity.is_guest:
            return self.guests.increment(identity.value)
        if self.credits is None:
            return False
        return self.credits.deduct(identity.value)

    def admit(self, identity: Identity) -> QuotaDecision:
        """``check`` then ``commit``, raising ``QuotaExceededError`` when refused."""
        decision = self.check(identity)
        if not decision.allowed:
            raise self._refusal(identity, decision)
        if not self.commit(identity):
            raise self._refusal(identity, QuotaDecision(allowed=False, remaining=0))
        logger.info("Quota charged for %s:%s", identity.kind, identity.value)
        return self.check(identity)

    def _refusal(self, identity: Identity, decision: QuotaDecision) -> QuotaExceededError:
        if identity.is_guest:
            return QuotaExceededError(
                f"免费试用次数已用完（{self.guests.limit}次），请登录后继续使用",
                remaining=0,
                need_login=True,
            )
        if self.credits is None or self.credits.balance(identity.value) is None:
            return QuotaExceededError("请先登录", need_login=True)
        return QuotaExceededError(
            "积分不足，请充值后继续使用",
            remaining=decision.remaining,
            need_credits=True,
        )
