"""Account and credit persistence.

Accounts live in one JSON document, either on disk or in the object store.
Password hashing uses PBKDF2 from the standard library.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
import threading
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from modules.services.storage_service import StorageService

logger = logging.getLogger(__name__)

_HASH_ITERATIONS = 120_000


def hash_password(password: str, salt: Optional[str] = None) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), bytes.fromhex(salt), _HASH_ITERATIONS)
    return f"pbkdf2_sha256${_HASH_ITERATIONS}${salt}${digest.hex()}"


def check_password(password: str, encoded: str) -> bool:
    try:
        _, iterations, salt, expected = encoded.split("$", 3)
        digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), bytes.fromhex(salt), int(iterations))
    except ValueError:
        return False
    return hmac.compare_digest(digest.hex(), expected)


@dataclass(slots=True)
class Account:
    """A registered user and their credit balance."""

    id: str
    email: str
    username: str
    password_hash: str
    credits: int = 0
    created_at: str = ""

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "credits": self.credits,
            "createdAt": self.created_at,
        }


class AccountStore:
    """Account lookups and atomic credit changes over a JSON document."""

    def __init__(self, initial_credits: int = 100) -> None:
        self.initial_credits = initial_credits
        self._lock = threading.RLock()

    def _read_document(self) -> Optional[bytes]:
        raise NotImplementedError

    def _write_document(self, data: bytes) -> None:
        raise NotImplementedError

    def _load(self) -> List[Account]:
        raw = self._read_document()
        if not raw:
            return []
        return [Account(**item) for item in json.loads(raw.decode("utf-8"))]

    def _save(self, accounts: List[Account]) -> None:
        data = json.dumps([asdict(item) for item in accounts], ensure_ascii=False, indent=2)
        self._write_document(data.encode("utf-8"))

    def find_by_id(self, account_id: str) -> Optional[Account]:
        with self._lock:
            return next((item for item in self._load() if item.id == account_id), None)

    def find_by_email(self, email: str) -> Optional[Account]:
        normalized = email.strip().lower()
        with self._lock:
            return next((item for item in self._load() if item.email == normalized), None)

    def create(self, email: str, username: str, password: str) -> Account:
        normalized = email.strip().lower()
        if not normalized or not password:
            raise ValueError("邮箱和密码不能为空")
        with self._lock:
            accounts = self._load()
            if any(item.email == normalized for item in accounts):
                raise ValueError("该邮箱已被注册")
            account = Account(
                id=uuid.uuid4().hex,
                email=normalized,
                username=username.strip() or normalized.split("@")[0],
                password_hash=hash_password(password),
                credits=self.initial_credits,
                created_at=datetime.now(timezone.utc).isoformat(),
            )
            accounts.append(account)
            self._save(accounts)
        logger.info("Registered account %s", account.id)
        return account

    def verify_password(self, email: str, password: str) -> Optional[Account]:
        account = self.find_by_email(email)
        if account is None or not check_password(password, account.password_hash):
            return None
        return account

    def deduct_credits(self, account_id: str, amount: int) -> bool:
        """Subtract ``amount``; leaves the balance untouched when it would go negative."""
        with self._lock:
            accounts = self._load()
            account = next((item for item in accounts if item.id == account_id), None)
            if account is None or account.credits < amount:
                return False
            account.credits -= amount
            self._save(accounts)
        return True

    def set_credits(self, account_id: str, credits: int) -> bool:
        with self._lock:
            accounts = self._load()
            account = next((item for item in accounts if item.id == account_id), None)
            if account is None:
                return False
            account.credits = max(0, int(credits))
            self._save(accounts)
        return True


class FileAccountStore(AccountStore):
    """Accounts kept in a local JSON file."""

    def __init__(self, path: Path, initial_credits: int = 100) -> None:
        super().__init__(initial_credits)
        self.path = Path(path)

    def _read_document(self) -> Optional[bytes]:
        if not self.path.exists():
            return None
        return self.path.read_bytes()

    def _write_document(self, data: bytes) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_bytes(data)


class StorageAccountStore(AccountStore):
    """Accounts kept as one JSON object in blob storage."""

    def __init__(self, storage: StorageService, key: str = "users/users.json", initial_credits: int = 100) -> None:
        super().__init__(initial_credits)
        self.storage = storage
        self.key = key

    def _read_document(self) -> Optional[bytes]:
        return self.storage.get(self.key)

    def _write_document(self, data: bytes) -> None:
        self.storage.put(self.key, data, "application/json")
