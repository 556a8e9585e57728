# Copyright © 2025 Phaethon Order LLC. All rights reserved. Provided solely for evaluation. See LICENSE.
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing.errors import StorageConflict
from billing.transitions import Transition
from database.crud import (
    clear_subscription,
    conditional_plan_update,
    get_user_summary,
    has_grant_for_plan,
    insert_credit_grant,
)
from utils.config import ResubscribePolicy
from utils.logger import get_logger

logger = get_logger("billing.ledger")

APPLIED = "applied"
PLAN_RESTORED = "plan_restored"
ALREADY_ON_PLAN = "already_on_plan"
DUPLICATE_GRANT = "duplicate_grant"
CONFLICT = "conflict"
CANCELLED = "cancelled"
SUBSCRIPTION_MISMATCH = "subscription_mismatch"
USER_NOT_FOUND = "user_not_found"


@dataclass(frozen=True)
class LedgerResult:
    applied: bool
    reason: str
    user_id: int
    plan_type: Optional[str] = None
    credits: Optional[int] = None
    credit_delta: int = 0


def transition_key(user_id: int, transition: Transition, reference: Optional[str]) -> str:
    """Identity of one plan transition: the same purchase always maps to the same key."""
    return f"{user_id}:{transition.from_plan.value}:{transition.new_plan.value}:{reference or '-'}"


class LedgerWriter:
    def __init__(self, resubscribe_policy: ResubscribePolicy = ResubscribePolicy.GRANT) -> None:
        self._resubscribe_policy = resubscribe_policy

    def _result(self, db: Session, user_id: int, *, applied: bool, reason: str, credit_delta: int = 0) -> LedgerResult:
        summary = get_user_summary(db, user_id)
        if summary is None:
            return LedgerResult(applied=False, reason=USER_NOT_FOUND, user_id=user_id)
        return LedgerResult(
            applied=applied,
            reason=reason,
            user_id=user_id,
            plan_type=summary["plan_type"],
            credits=summary["credits"],
            credit_delta=credit_delta,
        )

    def apply(
        self,
        db: Session,
        *,
        user_id: int,
        transition: Transition,
        subscription_id: Optional[str],
        source: str,
        event_id: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> LedgerResult:
        """Apply ``transition`` to the user row at most once.

        The grant row and the plan/credit update share one transaction. The
        update only matches while the user is still on ``transition.from_plan``,
        so a writer that lost the race resolves to a no-op.
        """
        if transition.clear_subscription:
            return self.cancel(db, user_id=user_id, subscription_id=subscription_id)
        if transition.is_noop:
            return self._result(db, user_id, applied=False, reason=ALREADY_ON_PLAN)

        credit_delta = transition.credit_delta
        reason = APPLIED
        if self._resubscribe_policy == ResubscribePolicy.PLAN_ONLY and has_grant_for_plan(
            db, user_id, transition.new_plan
        ):
            credit_delta = 0
            reason = PLAN_RESTORED

        key = transition_key(user_id, transition, subscription_id or reference)
        try:
            insert_credit_grant(
                db,
                user_id=user_id,
                transition_key=key,
                from_plan=transition.from_plan,
                to_plan=transition.new_plan,
                credits_granted=credit_delta,
                subscription_id=subscription_id,
                source=source,
                event_id=event_id,
            )
            updated = conditional_plan_update(
                db,
                user_id=user_id,
                expected_plan=transition.from_plan,
                new_plan=transition.new_plan,
                credit_delta=credit_delta,
                subscription_id=subscription_id,
            )
            if updated == 0:
                raise StorageConflict(f"User {user_id} is no longer on {transition.from_plan.value}")
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info("Grant %s already applied; skipping duplicate", key)
            return self._result(db, user_id, applied=False, reason=DUPLICATE_GRANT)
        except StorageConflict as exc:
            db.rollback()
            logger.info("Skipping grant %s: %s", key, exc)
            return self._result(db, user_id, applied=False, reason=CONFLICT)
        except Exception:
            db.rollback()
            raise

        logger.info(
            "User %s moved %s -> %s via %s (+%s credits)",
            user_id,
            transition.from_plan.value,
            transition.new_plan.value,
            source,
            credit_delta,
        )
        return self._result(db, user_id, applied=True, reason=reason, credit_delta=credit_delta)

    def cancel(self, db: Session, *, user_id: int, subscription_id: Optional[str]) -> LedgerResult:
        """Return the user to FREE if ``subscription_id`` is their active subscription."""
        try:
            updated = clear_subscription(db, user_id=user_id, subscription_id=subscription_id)
            db.commit()
        except Exception:
            db.rollback()
            raise

        if updated == 0:
            logger.info(
                "Subscription %s is not the active subscription for user %s; nothing to cancel",
                subscription_id,
                user_id,
            )
            return self._result(db, user_id, applied=False, reason=SUBSCRIPTION_MISMATCH)

        logger.info("Subscription %s cancelled; user %s is now on FREE", subscription_id, user_id)
        return self._result(db, user_id, applied=True, reason=CANCELLED)
