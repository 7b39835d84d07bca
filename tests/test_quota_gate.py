"""访客额度与账户积分的测试。"""

from __future__ import annotations

import pytest

from modules.pipelines.errors import QuotaExceededError
from modules.quota.gate import QuotaGate
from modules.quota.ledgers import AccountCreditLedger, GuestQuotaLedger, Identity
from modules.services.account_store import FileAccountStore, StorageAccountStore, check_password
from modules.services.storage_service import LocalStorageService

DAY = 24 * 60 * 60


class FakeClock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path) -> FileAccountStore:
    return FileAccountStore(tmp_path / "users.json", initial_credits=2)


def test_guest_limit_then_reset_after_a_day(clock):
    gate = QuotaGate(GuestQuotaLedger(limit=5, ttl_seconds=DAY, clock=clock))
    guest = Identity.guest("g1")

    for expected_remaining in (5, 4, 3, 2, 1):
        decision = gate.check(guest)
        assert decision.allowed
        assert decision.remaining == expected_remaining
        assert gate.commit(guest)

    decision = gate.check(guest)
    assert decision.allowed is False
    assert decision.remaining == 0
    assert gate.commit(guest) is False
    assert gate.guests.used("g1") == 5

    clock.now += DAY + 1
    decision = gate.check(guest)
    assert decision.allowed
    assert decision.remaining == 5


def test_guest_window_restarts_on_each_use(clock):
    ledger = GuestQuotaLedger(limit=2, ttl_seconds=DAY, clock=clock)
    ledger.increment("g1")
    clock.now += DAY - 10
    ledger.increment("g1")
    clock.now += 20

    assert ledger.used("g1") == 2


def test_guests_are_counted_separately(clock):
    gate = QuotaGate(GuestQuotaLedger(limit=1, clock=clock))
    gate.admit(Identity.guest("a"))

    assert gate.check(Identity.guest("a")).allowed is False
    assert gate.check(Identity.guest("b")).allowed is True


def test_check_does_not_mutate(clock):
    gate = QuotaGate(GuestQuotaLedger(limit=5, clock=clock))
    for _ in range(10):
        gate.check(Identity.guest("g1"))
    assert gate.guests.usage("g1") == {"remaining": 5, "limit": 5, "used": 0}


def test_guest_admit_raises_need_login(clock):
    gate = QuotaGate(GuestQuotaLedger(limit=1, clock=clock))
    gate.admit(Identity.guest("g1"))

    with pytest.raises(QuotaExceededError) as excinfo:
        gate.admit(Identity.guest("g1"))

    assert excinfo.value.need_login is True
    assert excinfo.value.remaining == 0


def test_account_credits_never_negative(store):
    account = store.create("User@Example.com", "user", "secret123")
    gate = QuotaGate(GuestQuotaLedger(), AccountCreditLedger(store, cost=1))
    identity = Identity.account(account.id)

    assert gate.admit(identity).remaining == 1
    assert gate.admit(identity).remaining == 0

    with pytest.raises(QuotaExceededError) as excinfo:
        gate.admit(identity)

    assert excinfo.value.need_credits is True
    assert store.find_by_id(account.id).credits == 0
    assert gate.commit(identity) is False


def test_unknown_account_is_refused(store):
    gate = QuotaGate(GuestQuotaLedger(), AccountCreditLedger(store))

    decision = gate.check(Identity.account("nobody"))

    assert decision.allowed is False
    assert decision.remaining == 0
    with pytest.raises(QuotaExceededError) as excinfo:
        gate.admit(Identity.account("nobody"))
    assert excinfo.value.need_login is True


def test_account_store_rejects_duplicate_email(store):
    store.create("a@example.com", "a", "pw123456")
    with pytest.raises(ValueError, match="已被注册"):
        store.create("A@example.com", "b", "pw123456")


def test_account_store_password_roundtrip(store):
    account = store.create("a@example.com", "", "pw123456")

    assert account.username == "a"
    assert account.password_hash != "pw123456"
    assert check_password("pw123456", account.password_hash)
    assert store.verify_password("a@example.com", "pw123456").id == account.id
    assert store.verify_password("a@example.com", "wrong") is None


def test_storage_account_store_persists_in_blob(tmp_path):
    storage = LocalStorageService(tmp_path / "blobs")
    store = StorageAccountStore(storage, initial_credits=100)
    account = store.create("b@example.com", "b", "pw123456")

    reopened = StorageAccountStore(storage)
    assert reopened.find_by_email("b@example.com").credits == 100
    assert reopened.set_credits(account.id, 7)
    assert store.find_by_id(account.id).credits == 7
