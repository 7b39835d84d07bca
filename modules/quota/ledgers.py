"""Guest trial counters and account credit ledgers."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from modules.services.account_store import AccountStore
from modules.utils.cache import TTLCache

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Identity:
    """Who a generation is billed to: an opaque guest id or an account id."""

    kind: str
    value: str

    @classmethod
    def guest(cls, guest_id: str) -> "Identity":
        return cls(kind="guest", value=guest_id)

    @classmethod
    def account(cls, account_id: str) -> "Identity":
        return cls(kind="account", value=account_id)

    @property
    def is_guest(self) -> bool:
        return self.kind == "guest"

    @property
    def storage_key(self) -> str:
        """Namespace used for history documents and image keys."""
        return f"guest_{self.value}" if self.is_guest else self.value


@dataclass(slots=True)
class GuestUsage:
    guest_id: str
    used_count: int = 0
    last_used_at: float = 0.0


class GuestQuotaLedger:
    """Process-local free-trial counters.

    Entries expire ``ttl_seconds`` after their last use. State is not shared
    between processes, so the limit is enforced per instance only.
    """

    def __init__(
        self,
        limit: int = 5,
        ttl_seconds: float = 24 * 60 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.limit = limit
        self._clock = clock
        self._usage: TTLCache[str, GuestUsage] = TTLCache(ttl_seconds=ttl_seconds, clock=clock)

    def purge(self) -> int:
        removed = self._usage.purge()
        if removed:
            logger.debug("Purged %d expired guest counters", removed)
        return removed

    def used(self, guest_id: str) -> int:
        usage = self._usage.get(guest_id)
        return usage.used_count if usage else 0

    def remaining(self, guest_id: str) -> int:
        return max(0, self.limit - self.used(guest_id))

    def usage(self, guest_id: str) -> Dict[str, int]:
        used = self.used(guest_id)
        return {"remaining": max(0, self.limit - used), "limit": self.limit, "used": used}

    def increment(self, guest_id: str) -> bool:
        usage = self._usage.get(guest_id) or GuestUsage(guest_id=guest_id)
        if usage.used_count >= self.limit:
            return False
        usage.used_count += 1
        usage.last_used_at = self._clock()
        self._usage.set(guest_id, usage)
        return True


class AccountCreditLedger:
    """Credits held by the account store, charged a fixed cost per generation."""

    def __init__(self, store: AccountStore, cost: int = 1) -> None:
        self.store = store
        self.cost = cost

    def balance(self, account_id: str) -> Optional[int]:
        account = self.store.find_by_id(account_id)
        return account.credits if account else None

    def deduct(self, account_id: str) -> bool:
        return self.store.deduct_credits(account_id, self.cost)
