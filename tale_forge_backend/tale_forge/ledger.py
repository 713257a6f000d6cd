"""
Credit ledger with reserve/commit/release semantics.

Balances are never incremented or decremented directly by callers. A
generation attempt first reserves its price, then either commits the
reservation (artifact persisted) or releases it (any failure). Every
transition is written to KV before it is acknowledged, and reservations that
are never finalized are released by ``sweep_expired`` once they outlive the
reservation timeout.

Per user, ``ledger:{user}`` holds the balance and the open reservations only.
It is rewritten with compare-and-set, so concurrent app instances cannot
overdraw it. Finalized charges move to ``charge:{id}`` and are listed in
``ledger:{user}:charges``.
"""
import time
import logging
from typing import Callable, List, Optional, Tuple, TypeVar

from .errors import InsufficientCredits, KVError, UnknownReservation
from .kv_storage import KVStorage
from .models import ArtifactKind, ChargeState, CreditAccount, CreditCharge
from .pricing import MIN_CHARGE
from .settings import RESERVATION_TIMEOUT_S

logger = logging.getLogger(__name__)

USERS_KEY = "ledger:users"

T = TypeVar("T")


class CreditLedger:
    def __init__(self, kv: KVStorage, *, reservation_timeout: float = RESERVATION_TIMEOUT_S,
                 clock: Callable[[], float] = time.time, max_update_attempts: int = 20):
        self.kv = kv
        self.reservation_timeout = reservation_timeout
        self._clock = clock
        self.max_update_attempts = max_update_attempts

    async def _load(self, user_id: str) -> CreditAccount:
        raw = await self.kv.get(f"ledger:{user_id}")
        if raw is None:
            return CreditAccount(user_id=user_id)
        return CreditAccount.model_validate_json(raw)

    async def _update(self, user_id: str,
                      fn: Callable[[CreditAccount], Optional[T]]) -> Tuple[CreditAccount, Optional[T]]:
        """Compare-and-set loop on the account document.

        ``fn`` edits the account in place and may be run more than once. When it
        returns None nothing is written.
        """
        key = f"ledger:{user_id}"
        for attempt in range(1, self.max_update_attempts + 1):
            raw = await self.kv.get(key)
            account = CreditAccount.model_validate_json(raw) if raw is not None else CreditAccount(user_id=user_id)
            result = fn(account)
            if result is None:
                return account, None
            if await self.kv.compare_and_set(key, raw, account.model_dump_json()):
                return account, result
            logger.info(f"Account {user_id} changed underneath us, retrying ({attempt}/{self.max_update_attempts})")
        raise KVError(f"Account {user_id} is too contended to update", {"user_id": user_id})

    async def balance(self, user_id: str) -> int:
        account = await self._load(user_id)
        return account.balance

    async def charges(self, user_id: str) -> List[CreditCharge]:
        account = await self._load(user_id)
        charges = list(account.reserved.values())
        for charge_id in await self.kv.lrange(f"ledger:{user_id}:charges"):
            charge = await self._load_finalized(charge_id)
            if charge is not None:
                charges.append(charge)
        return charges

    async def _load_finalized(self, reservation_id: str) -> Optional[CreditCharge]:
        raw = await self.kv.get(f"charge:{reservation_id}")
        if raw is None:
            return None
        return CreditCharge.model_validate_json(raw)

    async def get_charge(self, reservation_id: str) -> Optional[CreditCharge]:
        user_id = await self.kv.get(f"reservation:{reservation_id}")
        if user_id is None:
            return None
        account = await self._load(user_id)
        if reservation_id in account.reserved:
            return account.reserved[reservation_id]
        return await self._load_finalized(reservation_id)

    async def grant(self, user_id: str, amount: int) -> int:
        """Add credits to a user's available balance and return the new balance."""
        if amount <= 0:
            raise ValueError("grant amount must be positive")
        await self.kv.sadd(USERS_KEY, user_id)

        def add(account: CreditAccount) -> int:
            account.balance += amount
            return account.balance

        _, balance = await self._update(user_id, add)
        logger.info(f"Granted {amount} credits to {user_id}, balance {balance}")
        return balance

    async def reserve(self, user_id: str, amount: int, *, request_id: Optional[str] = None,
                      segment_id: Optional[str] = None, kind: Optional[ArtifactKind] = None) -> str:
        if amount <= 0:
            raise ValueError("reservation amount must be positive")
        charge = CreditCharge(
            user_id=user_id,
            amount=amount,
            request_id=request_id,
            segment_id=segment_id,
            kind=kind,
            created_at=self._clock(),
        )
        # a pointer without a matching reservation is ignored by commit/release
        await self.kv.set(f"reservation:{charge.id}", user_id)

        def take(account: CreditAccount) -> CreditCharge:
            if account.balance < amount:
                raise InsufficientCredits(user_id, amount, account.balance)
            account.balance -= amount
            account.reserved[charge.id] = charge.model_copy()
            return charge

        try:
            await self._update(user_id, take)
        except InsufficientCredits:
            await self.kv.delete(f"reservation:{charge.id}")
            raise
        logger.info(f"Reserved {amount} credits for {user_id} ({kind.value if kind else 'n/a'}), reservation {charge.id}")
        return charge.id

    async def commit(self, reservation_id: str, amount: Optional[int] = None) -> Optional[CreditCharge]:
        """Consume a reservation. ``amount`` below the reserved price refunds the difference."""
        return await self._finalize(reservation_id, ChargeState.COMMITTED, amount)

    async def release(self, reservation_id: str) -> Optional[CreditCharge]:
        return await self._finalize(reservation_id, ChargeState.RELEASED)

    async def _finalize(self, reservation_id: str, target: ChargeState,
                        amount: Optional[int] = None) -> Optional[CreditCharge]:
        try:
            user_id = await self.kv.get(f"reservation:{reservation_id}")
            if user_id is None:
                raise UnknownReservation(reservation_id)
            _, charge = await self._update(
                user_id, lambda account: self._transition(account, reservation_id, target, amount))
            if charge is None:
                done = await self._load_finalized(reservation_id)
                if done is None or done.state != target:
                    raise UnknownReservation(reservation_id, done.state.value if done else None)
                return done
        except UnknownReservation as e:
            logger.warning(f"Ignoring {target.value} request: {e.message}")
            return None
        await self._record_finalized(charge)
        logger.info(f"Reservation {reservation_id} {target.value} ({charge.amount} credits, user {user_id})")
        return charge

    async def _record_finalized(self, charge: CreditCharge) -> None:
        await self.kv.set(f"charge:{charge.id}", charge.model_dump_json())
        await self.kv.rpush(f"ledger:{charge.user_id}:charges", charge.id)

    def _transition(self, account: CreditAccount, reservation_id: str, target: ChargeState,
                    amount: Optional[int] = None) -> Optional[CreditCharge]:
        """Move an open reservation out of the account; None means it is no longer open."""
        charge = account.reserved.pop(reservation_id, None)
        if charge is None:
            return None
        charge.state = target
        charge.finalized_at = self._clock()
        if target == ChargeState.RELEASED:
            account.balance += charge.amount
        elif amount is not None and amount != charge.amount:
            settled = max(MIN_CHARGE, min(amount, charge.amount))
            if amount > charge.amount:
                logger.warning(f"Reservation {reservation_id} settled at {amount} credits, "
                               f"more than the {charge.amount} reserved; charging {settled}")
            account.balance += charge.amount - settled
            charge.amount = settled
        return charge

    async def sweep_expired(self, now: Optional[float] = None) -> List[CreditCharge]:
        """Release reservations older than the reservation timeout."""
        now = self._clock() if now is None else now
        cutoff = now - self.reservation_timeout
        released: List[CreditCharge] = []
        for user_id in await self.kv.smembers(USERS_KEY):
            account = await self._load(user_id)
            if not any(c.created_at <= cutoff for c in account.reserved.values()):
                continue

            def expire(account: CreditAccount) -> Optional[List[CreditCharge]]:
                expired = [c.id for c in account.reserved.values() if c.created_at <= cutoff]
                charges = [self._transition(account, c, ChargeState.RELEASED) for c in expired]
                return charges or None

            _, expired = await self._update(user_id, expire)
            for charge in expired or []:
                await self._record_finalized(charge)
                logger.warning(f"Released abandoned reservation {charge.id} ({charge.amount} credits, user {user_id})")
                released.append(charge)
        return released
