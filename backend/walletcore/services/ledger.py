"""
Balance ledger: the only code path that writes `balances.balance` and
`balances.locked_balance`.

Every mutating call is a single conditional UPDATE committed on its own, so
the data store is the only source of mutual exclusion: two requests (or two
server instances) touching the same (user, asset) row are serialized by the
row write itself, and the WHERE clause re-checks the pre-condition at that
point. No in-process lock is involved.

Because each call commits, a caller that needs several ledger steps plus
domain-row writes must compensate explicitly when a later step fails
(see services/reconciliation.py).
"""
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from walletcore.core.exceptions import InvalidAmount, InsufficientBalance, InvalidState
from walletcore.models.balance import Balance

logger = logging.getLogger(__name__)

QUANT = Decimal("0.00000001")
ZERO = Decimal("0")


def parse_amount(amount) -> Decimal:
    """Validate a positive money amount with at most 8 decimal places."""
    if isinstance(amount, bool) or amount is None:
        raise InvalidAmount("Invalid amount")
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmount("Invalid amount")
    if not value.is_finite() or value <= 0:
        raise InvalidAmount("Amount must be greater than 0")
    if value != value.quantize(QUANT):
        raise InvalidAmount("Amount supports at most 8 decimal places")
    return value


@dataclass(frozen=True)
class BalanceState:
    balance: Decimal
    locked_balance: Decimal

    @property
    def available(self) -> Decimal:
        return self.balance - self.locked_balance

    def to_dict(self) -> dict:
        return {
            "balance": self.balance,
            "locked_balance": self.locked_balance,
            "available": self.available,
        }


class BalanceLedger:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def _read(self, user_id: int, asset: str) -> BalanceState:
        row = (await self.db.execute(
            select(Balance.balance, Balance.locked_balance)
            .where(Balance.user_id == user_id, Balance.asset == asset)
        )).first()
        if row is None:
            return BalanceState(ZERO, ZERO)
        return BalanceState(Decimal(str(row.balance or 0)), Decimal(str(row.locked_balance or 0)))

    async def get_balance(self, user_id: int, asset: str) -> BalanceState:
        return await self._read(user_id, asset)

    async def _conditional_update(self, user_id: int, asset: str, condition, values: dict) -> tuple[bool, BalanceState]:
        """Run one guarded UPDATE. Commits on success, rolls back on a miss."""
        try:
            result = await self.db.execute(
                update(Balance)
                .where(Balance.user_id == user_id, Balance.asset == asset, condition)
                .values(updated_at=func.now(), **values)
                .execution_options(synchronize_session=False)
            )
            state = await self._read(user_id, asset)
            if result.rowcount != 1:
                await self.db.rollback()
                return False, state
            await self.db.commit()
            return True, state
        except Exception:
            await self.db.rollback()
            raise

    async def credit(self, user_id: int, asset: str, amount) -> BalanceState:
        amount = parse_amount(amount)
        for _ in range(2):
            try:
                result = await self.db.execute(
                    update(Balance)
                    .where(Balance.user_id == user_id, Balance.asset == asset)
                    .values(balance=Balance.balance + amount, updated_at=func.now())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    self.db.add(Balance(user_id=user_id, asset=asset, balance=amount, locked_balance=ZERO))
                    await self.db.flush()
                state = await self._read(user_id, asset)
                await self.db.commit()
            except IntegrityError:
                # a concurrent first credit created the row; the UPDATE will hit it now
                await self.db.rollback()
                continue
            except Exception:
                await self.db.rollback()
                raise
            logger.info("Ledger credit user=%s asset=%s amount=%s balance=%s", user_id, asset, amount, state.balance)
            return state
        raise InvalidState("Could not create balance row")

    async def debit(self, user_id: int, asset: str, amount) -> BalanceState:
        amount = parse_amount(amount)
        ok, state = await self._conditional_update(
            user_id, asset,
            Balance.balance - Balance.locked_balance >= amount,
            {"balance": Balance.balance - amount},
        )
        if not ok:
            raise InsufficientBalance(state.available, amount, state.locked_balance)
        logger.info("Ledger debit user=%s asset=%s amount=%s balance=%s", user_id, asset, amount, state.balance)
        return state

    async def lock(self, user_id: int, asset: str, amount) -> BalanceState:
        amount = parse_amount(amount)
        ok, state = await self._conditional_update(
            user_id, asset,
            Balance.balance - Balance.locked_balance >= amount,
            {"locked_balance": Balance.locked_balance + amount},
        )
        if not ok:
            raise InsufficientBalance(state.available, amount, state.locked_balance)
        logger.info("Ledger lock user=%s asset=%s amount=%s locked=%s", user_id, asset, amount, state.locked_balance)
        return state

    async def unlock(self, user_id: int, asset: str, amount, deduct: bool) -> BalanceState:
        """Release `amount` from locked funds; with deduct=True it also leaves the balance."""
        amount = parse_amount(amount)
        values = {"locked_balance": Balance.locked_balance - amount}
        if deduct:
            values["balance"] = Balance.balance - amount
        ok, state = await self._conditional_update(
            user_id, asset, Balance.locked_balance >= amount, values,
        )
        if not ok:
            raise InvalidState(
                "Unlock amount exceeds locked balance",
                locked=state.locked_balance, requested=amount,
            )
        logger.info(
            "Ledger unlock user=%s asset=%s amount=%s deduct=%s balance=%s locked=%s",
            user_id, asset, amount, deduct, state.balance, state.locked_balance,
        )
        return state
