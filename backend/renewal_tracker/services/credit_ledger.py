"""
AI credit ledger.

``LedgerState`` holds the pure arithmetic. ``CreditLedgerService`` applies the
same rules to the ``credit_ledgers`` table with single conditional UPDATE
statements, so concurrent consumers cannot overdraw a ledger.
"""
from dataclasses import dataclass, replace
from datetime import date
from typing import Optional

from loguru import logger
from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError

from ..config import PipelineConfig
from ..database import SessionLocal, session_scope
from ..exceptions import InsufficientCreditsError
from ..models.contract import CreditsInfo
from ..models.models import CreditLedger


def next_reset_date(today: date) -> date:
    """First day of the month after ``today``."""
    if today.month == 12:
        return date(today.year + 1, 1, 1)
    return date(today.year, today.month + 1, 1)


@dataclass(frozen=True)
class LedgerState:
    user_id: str
    plan: str
    remaining: int
    monthly_limit: int
    purchased: int
    used_this_month: int
    total_used: int
    reset_date: date

    @classmethod
    def new(cls, user_id: str, plan: str, today: date,
            config: Optional[PipelineConfig] = None) -> "LedgerState":
        config = config or PipelineConfig()
        limit = config.plan_monthly_credits.get(plan, config.plan_monthly_credits["basic"])
        return cls(
            user_id=user_id,
            plan=plan,
            remaining=limit,
            monthly_limit=limit,
            purchased=0,
            used_this_month=0,
            total_used=0,
            reset_date=next_reset_date(today),
        )

    @classmethod
    def from_row(cls, row: CreditLedger) -> "LedgerState":
        return cls(
            user_id=row.user_id,
            plan=row.plan,
            remaining=row.remaining,
            monthly_limit=row.monthly_limit,
            purchased=row.purchased,
            used_this_month=row.used_this_month,
            total_used=row.total_used,
            reset_date=row.reset_date,
        )

    def is_reset_due(self, today: date) -> bool:
        return self.reset_date <= today

    def consume(self) -> "LedgerState":
        if self.remaining <= 0:
            raise InsufficientCreditsError(self.user_id)
        return replace(
            self,
            remaining=self.remaining - 1,
            used_this_month=self.used_this_month + 1,
            total_used=self.total_used + 1,
        )

    def refund(self) -> "LedgerState":
        return replace(
            self,
            remaining=self.remaining + 1,
            used_this_month=max(0, self.used_this_month - 1),
            total_used=max(0, self.total_used - 1),
        )

    def reset_monthly(self, today: date) -> "LedgerState":
        return replace(
            self,
            remaining=self.monthly_limit + self.purchased,
            used_this_month=0,
            reset_date=next_reset_date(today),
        )

    def purchase(self, credits: int, max_purchase: int = 100) -> "LedgerState":
        if not 1 <= credits <= max_purchase:
            raise ValueError(f"Credit purchase must be between 1 and {max_purchase}, got {credits}")
        return replace(self, purchased=self.purchased + credits, remaining=self.remaining + credits)


class CreditLedgerService:
    """Storage adapter for the credit ledger; every operation commits on its own."""

    def __init__(self, session_factory=SessionLocal, config: Optional[PipelineConfig] = None):
        self.session_factory = session_factory
        self.config = config or PipelineConfig()

    def _ensure_ledger(self, db, user_id: str, today: date, plan: str = "basic") -> None:
        """Create the ledger on first use; must run first in its transaction."""
        if db.get(CreditLedger, user_id) is not None:
            return
        state = LedgerState.new(user_id, plan, today, self.config)
        db.add(CreditLedger(
            user_id=state.user_id,
            plan=state.plan,
            remaining=state.remaining,
            monthly_limit=state.monthly_limit,
            purchased=state.purchased,
            used_this_month=state.used_this_month,
            total_used=state.total_used,
            reset_date=state.reset_date,
        ))
        try:
            db.flush()
        except IntegrityError:
            # Another request created the ledger between the check and the insert
            db.rollback()
            logger.info(f"Credit ledger for user {user_id} already exists, using it")
            return
        logger.info(f"Created {plan} credit ledger for user {user_id} with {state.remaining} credits")

    def _reset_if_due(self, db, user_id: str, today: date) -> bool:
        result = db.execute(
            update(CreditLedger)
            .where(CreditLedger.user_id == user_id, CreditLedger.reset_date <= today)
            .values(
                remaining=CreditLedger.monthly_limit + CreditLedger.purchased,
                used_this_month=0,
                reset_date=next_reset_date(today),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info(f"Monthly credits reset for user {user_id}")
        return bool(result.rowcount)

    def _read(self, db, user_id: str) -> LedgerState:
        db.expire_all()
        row = db.execute(select(CreditLedger).where(CreditLedger.user_id == user_id)).scalar_one()
        return LedgerState.from_row(row)

    def get_state(self, user_id: str, today: date, plan: str = "basic") -> LedgerState:
        with session_scope(self.session_factory) as db:
            self._ensure_ledger(db, user_id, today, plan)
            self._reset_if_due(db, user_id, today)
            return self._read(db, user_id)

    def consume(self, user_id: str, today: date) -> int:
        """
        Take one credit, resetting the month first when due.

        Returns:
            The remaining balance

        Raises:
            InsufficientCreditsError: When the balance is zero; nothing is changed
        """
        with session_scope(self.session_factory) as db:
            self._ensure_ledger(db, user_id, today)
            self._reset_if_due(db, user_id, today)
            result = db.execute(
                update(CreditLedger)
                .where(CreditLedger.user_id == user_id, CreditLedger.remaining > 0)
                .values(
                    remaining=CreditLedger.remaining - 1,
                    used_this_month=CreditLedger.used_this_month + 1,
                    total_used=CreditLedger.total_used + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                logger.warning(f"User {user_id} has no AI credits remaining")
                raise InsufficientCreditsError(user_id)
            remaining = self._read(db, user_id).remaining

        logger.info(f"Consumed 1 AI credit for user {user_id}, {remaining} remaining")
        return remaining

    def refund(self, user_id: str) -> int:
        with session_scope(self.session_factory) as db:
            db.execute(
                update(CreditLedger)
                .where(CreditLedger.user_id == user_id)
                .values(
                    remaining=CreditLedger.remaining + 1,
                    used_this_month=case(
                        (CreditLedger.used_this_month > 0, CreditLedger.used_this_month - 1), else_=0
                    ),
                    total_used=case(
                        (CreditLedger.total_used > 0, CreditLedger.total_used - 1), else_=0
                    ),
                )
                .execution_options(synchronize_session=False)
            )
            remaining = self._read(db, user_id).remaining

        logger.info(f"Refunded 1 AI credit to user {user_id}, {remaining} remaining")
        return remaining

    def reset_monthly(self, user_id: str, today: date) -> LedgerState:
        with session_scope(self.session_factory) as db:
            self._ensure_ledger(db, user_id, today)
            db.execute(
                update(CreditLedger)
                .where(CreditLedger.user_id == user_id)
                .values(
                    remaining=CreditLedger.monthly_limit + CreditLedger.purchased,
                    used_this_month=0,
                    reset_date=next_reset_date(today),
                )
                .execution_options(synchronize_session=False)
            )
            state = self._read(db, user_id)

        logger.info(f"Monthly credits reset for user {user_id}: {state.remaining} available")
        return state

    def purchase(self, user_id: str, credits: int, today: date) -> LedgerState:
        max_purchase = self.config.max_credit_purchase
        if not 1 <= credits <= max_purchase:
            raise ValueError(f"Credit purchase must be between 1 and {max_purchase}, got {credits}")

        with session_scope(self.session_factory) as db:
            self._ensure_ledger(db, user_id, today)
            db.execute(
                update(CreditLedger)
                .where(CreditLedger.user_id == user_id)
                .values(
                    purchased=CreditLedger.purchased + credits,
                    remaining=CreditLedger.remaining + credits,
                )
                .execution_options(synchronize_session=False)
            )
            state = self._read(db, user_id)

        logger.info(f"User {user_id} purchased {credits} AI credits, {state.remaining} remaining")
        return state

    def get_credits_info(self, user_id: str, today: date) -> CreditsInfo:
        state = self.get_state(user_id, today)
        return CreditsInfo(
            plan=state.plan,
            remaining=state.remaining,
            monthly_limit=state.monthly_limit,
            purchased=state.purchased,
            used_this_month=state.used_this_month,
            total_used=state.total_used,
            reset_date=state.reset_date,
            can_use_ai=state.remaining > 0,
            needs_upgrade=state.remaining == 0 and state.plan == "basic",
        )
