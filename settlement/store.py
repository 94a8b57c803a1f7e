"""
Ledger store: per-user balance records with atomic read-modify-write.

Every balance mutation goes through ``atomic_update`` (commutative increments,
optionally guarded by an idempotency key) or ``transaction`` (versioned
read, check, conditional commit, retry on conflict).
"""

import logging
import threading
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from typing import Callable, Iterable, Optional

from .models import AffiliatedProduct, Product, UserRecord

logger = logging.getLogger(__name__)

NUMERIC_FIELDS = frozenset({"balance", "earnings_level1", "earnings_level2"})
SETTABLE_FIELDS = frozenset({"has_deposited", "pix_key", "pix_full_name"})

AffiliationCallback = Callable[[str, AffiliatedProduct], None]
Changes = tuple[dict[str, Decimal], dict[str, object]]


class LedgerStoreError(Exception):
    pass


class RecordNotFound(LedgerStoreError):
    pass


class TransactionConflict(LedgerStoreError):
    pass


class LedgerWriteError(LedgerStoreError):
    pass


class LedgerStore(ABC):
    @abstractmethod
    def get_user(self, user_id: str) -> Optional[UserRecord]: ...

    @abstractmethod
    def put_user(self, user: UserRecord) -> None: ...

    @abstractmethod
    def list_users(self) -> list[UserRecord]: ...

    @abstractmethod
    def get_product(self, product_id: str) -> Optional[Product]: ...

    @abstractmethod
    def put_product(self, product: Product) -> None: ...

    @abstractmethod
    def atomic_update(
        self,
        user_id: str,
        increments: Optional[dict[str, Decimal]] = None,
        sets: Optional[dict[str, object]] = None,
        idempotency_key: Optional[str] = None,
        compute: Optional[Callable[[UserRecord], Changes]] = None,
    ) -> bool:
        """Apply increments and sets as one all-or-nothing write.

        ``compute`` derives the changes from the record as seen inside the
        write. Returns False without writing when ``idempotency_key`` was
        already applied.
        """

    @abstractmethod
    def transaction(
        self,
        user_id: str,
        fn: Callable[[UserRecord], dict[str, Decimal]],
        max_attempts: int = 5,
    ) -> UserRecord: ...

    @abstractmethod
    def add_affiliated_product(self, user_id: str, affiliated: AffiliatedProduct) -> bool: ...

    @abstractmethod
    def list_affiliated_products(self, user_id: str) -> list[AffiliatedProduct]: ...

    @abstractmethod
    def subscribe_affiliations(self, callback: AffiliationCallback) -> None: ...

    def atomic_increment(self, user_id: str, field: str, delta: Decimal) -> bool:
        return self.atomic_update(user_id, increments={field: delta})


class InMemoryLedgerStore(LedgerStore):
    def __init__(self, users: Iterable[UserRecord] = (), products: Iterable[Product] = ()):
        self.users: dict[str, dict] = {}
        self.products: dict[str, dict] = {}
        self.affiliated_products: dict[str, dict[str, dict]] = {}
        self.applied_keys: set[str] = set()
        self._subscribers: list[AffiliationCallback] = []
        self._lock = threading.RLock()
        for user in users:
            self.put_user(user)
        for product in products:
            self.put_product(product)

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self._lock:
            data = self.users.get(user_id)
            return UserRecord(**data) if data else None

    def put_user(self, user: UserRecord) -> None:
        with self._lock:
            existing = self.users.get(user.id)
            if existing and existing["referred_by"] and existing["referred_by"] != user.referred_by:
                raise LedgerWriteError(f"referred_by of user {user.id} is immutable once set")
            self.users[user.id] = user.model_dump()

    def list_users(self) -> list[UserRecord]:
        with self._lock:
            return [UserRecord(**data) for data in self.users.values()]

    def get_product(self, product_id: str) -> Optional[Product]:
        with self._lock:
            data = self.products.get(product_id)
            return Product(**data) if data else None

    def put_product(self, product: Product) -> None:
        with self._lock:
            self.products[product.id] = product.model_dump()

    def atomic_update(self, user_id, increments=None, sets=None, idempotency_key=None, compute=None) -> bool:
        with self._lock:
            if idempotency_key and idempotency_key in self.applied_keys:
                return False
            data = self.users.get(user_id)
            if data is None:
                raise RecordNotFound(f"User {user_id} not found")
            if compute is not None:
                increments, sets = compute(UserRecord(**data))
            self._apply(data, increments or {}, sets or {})
            if idempotency_key:
                self.applied_keys.add(idempotency_key)
            return True

    def transaction(self, user_id, fn, max_attempts=5) -> UserRecord:
        for attempt in range(1, max_attempts + 1):
            snapshot = self.get_user(user_id)
            if snapshot is None:
                raise RecordNotFound(f"User {user_id} not found")
            increments = fn(snapshot)
            try:
                return self._commit(user_id, snapshot.version, increments)
            except TransactionConflict:
                logger.info(f"Transaction on user {user_id} conflicted (attempt {attempt}/{max_attempts})")
        raise TransactionConflict(f"Transaction on user {user_id} aborted after {max_attempts} attempts")

    def add_affiliated_product(self, user_id: str, affiliated: AffiliatedProduct) -> bool:
        with self._lock:
            if user_id not in self.users:
                raise RecordNotFound(f"User {user_id} not found")
            docs = self.affiliated_products.setdefault(user_id, {})
            if affiliated.id in docs:
                return False
            docs[affiliated.id] = affiliated.model_dump()
            subscribers = list(self._subscribers)
        for callback in subscribers:
            callback(user_id, affiliated)
        return True

    def list_affiliated_products(self, user_id: str) -> list[AffiliatedProduct]:
        with self._lock:
            docs = self.affiliated_products.get(user_id, {})
            return [AffiliatedProduct(**d) for d in docs.values()]

    def subscribe_affiliations(self, callback: AffiliationCallback) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def _commit(self, user_id: str, expected_version: int, increments: dict[str, Decimal]) -> UserRecord:
        with self._lock:
            data = self.users.get(user_id)
            if data is None:
                raise RecordNotFound(f"User {user_id} not found")
            if data["version"] != expected_version:
                raise TransactionConflict(f"User {user_id} changed since version {expected_version}")
            self._apply(data, increments or {}, {})
            return UserRecord(**data)

    def _apply(self, data: dict, increments: dict[str, Decimal], sets: dict[str, object]) -> None:
        unknown = (set(increments) - NUMERIC_FIELDS) | (set(sets) - SETTABLE_FIELDS)
        if unknown:
            raise LedgerWriteError(f"Fields not writable: {sorted(unknown)}")
        try:
            deltas = {field: Decimal(str(delta)) for field, delta in increments.items()}
        except InvalidOperation as e:
            raise LedgerWriteError(f"Non-numeric increment: {increments}") from e
        if not all(delta.is_finite() for delta in deltas.values()):
            raise LedgerWriteError(f"Non-finite increment: {increments}")
        for field, delta in deltas.items():
            data[field] = data[field] + delta
        data.update(sets)
        data["version"] += 1
