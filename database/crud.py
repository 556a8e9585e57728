from __future__ import annotations

from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from utils.plans import PlanType

from .models import CreditGrant, ProcessedBillingEvent, UserAccount


def get_or_create_user(
    db: Session,
    auth_sub: str,
    email: Optional[str] = None,
    *,
    signup_credits: int = 1000,
) -> UserAccount:
    user = db.execute(select(UserAccount).where(UserAccount.auth_sub == auth_sub)).scalar_one_or_none()
    if user is None:
        user = UserAccount(
            auth_sub=auth_sub,
            email=email,
            credits=max(signup_credits, 0),
            plan_type=PlanType.FREE.value,
        )
        db.add(user)
        try:
            db.commit()
        except IntegrityError:
            # Another request created the same subject first.
            db.rollback()
            return db.execute(select(UserAccount).where(UserAccount.auth_sub == auth_sub)).scalar_one()
        db.refresh(user)
    elif email and user.email != email:
        user.email = email
        db.commit()
        db.refresh(user)
    return user


def get_user(db: Session, user_id: int) -> Optional[UserAccount]:
    return db.execute(
        select(UserAccount).where(UserAccount.id == user_id).execution_options(populate_existing=True)
    ).scalar_one_or_none()


def get_user_by_customer_id(db: Session, customer_id: str) -> Optional[UserAccount]:
    return db.execute(
        select(UserAccount)
        .where(UserAccount.billing_customer_id == customer_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def get_user_summary(db: Session, user_id: int) -> Optional[Dict[str, Any]]:
    row = db.execute(
        select(UserAccount.credits, UserAccount.plan_type).where(UserAccount.id == user_id)
    ).one_or_none()
    if row is None:
        return None
    return {"credits": row.credits, "plan_type": row.plan_type}


def assign_customer_id(db: Session, user_id: int, customer_id: str) -> Optional[str]:
    """Persist ``customer_id`` unless the user already has one; return the stored id."""
    db.execute(
        update(UserAccount)
        .where(UserAccount.id == user_id, UserAccount.billing_customer_id.is_(None))
        .values(billing_customer_id=customer_id)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return db.execute(select(UserAccount.billing_customer_id).where(UserAccount.id == user_id)).scalar_one_or_none()


def add_credits(db: Session, user_id: int, amount: int) -> Optional[int]:
    """Refund or top-up entry point for the extraction service; None for an unknown user."""
    if amount <= 0:
        raise ValueError("amount must be positive")
    result = db.execute(
        update(UserAccount)
        .where(UserAccount.id == user_id)
        .values(credits=UserAccount.credits + amount)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount == 0:
        return None
    return db.execute(select(UserAccount.credits).where(UserAccount.id == user_id)).scalar_one()


def debit_credits(db: Session, user_id: int, amount: int) -> Optional[int]:
    """Charge entry point for the extraction service; None when the balance is insufficient."""
    if amount <= 0:
        raise ValueError("amount must be positive")
    result = db.execute(
        update(UserAccount)
        .where(UserAccount.id == user_id, UserAccount.credits >= amount)
        .values(credits=UserAccount.credits - amount)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount == 0:
        return None
    return db.execute(select(UserAccount.credits).where(UserAccount.id == user_id)).scalar_one()


def insert_credit_grant(
    db: Session,
    *,
    user_id: int,
    transition_key: str,
    from_plan: PlanType,
    to_plan: PlanType,
    credits_granted: int,
    subscription_id: Optional[str],
    source: str,
    event_id: Optional[str],
) -> CreditGrant:
    """Stage a grant row in the current transaction. Raises IntegrityError on a duplicate key."""
    grant = CreditGrant(
        user_id=user_id,
        transition_key=transition_key,
        from_plan=from_plan.value,
        to_plan=to_plan.value,
        credits_granted=credits_granted,
        subscription_id=subscription_id,
        source=source,
        event_id=event_id,
    )
    db.add(grant)
    db.flush()
    return grant


def has_grant_for_plan(db: Session, user_id: int, plan: PlanType) -> bool:
    existing = db.execute(
        select(CreditGrant.id).where(
            CreditGrant.user_id == user_id,
            CreditGrant.to_plan == plan.value,
            CreditGrant.credits_granted > 0,
        ).limit(1)
    ).scalar_one_or_none()
    return existing is not None


def conditional_plan_update(
    db: Session,
    *,
    user_id: int,
    expected_plan: PlanType,
    new_plan: PlanType,
    credit_delta: int,
    subscription_id: Optional[str],
) -> int:
    """Move the user from ``expected_plan`` to ``new_plan`` in one statement.

    Returns the number of rows updated: zero means the plan changed underneath us.
    """
    values: Dict[str, Any] = {"plan_type": new_plan.value}
    if subscription_id:
        values["billing_subscription_id"] = subscription_id
    if credit_delta:
        values["credits"] = UserAccount.credits + credit_delta
    result = db.execute(
        update(UserAccount)
        .where(UserAccount.id == user_id, UserAccount.plan_type == expected_plan.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def clear_subscription(db: Session, *, user_id: int, subscription_id: Optional[str]) -> int:
    """Drop the user back to FREE if ``subscription_id`` is still the active one."""
    conditions = [UserAccount.id == user_id]
    if subscription_id:
        conditions.append(UserAccount.billing_subscription_id == subscription_id)
    result = db.execute(
        update(UserAccount)
        .where(*conditions)
        .values(plan_type=PlanType.FREE.value, billing_subscription_id=None)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def is_event_processed(db: Session, event_id: str) -> bool:
    existing = db.execute(
        select(ProcessedBillingEvent.id).where(ProcessedBillingEvent.event_id == event_id)
    ).scalar_one_or_none()
    return existing is not None


def record_processed_event(db: Session, *, event_id: str, event_type: str, outcome: str) -> bool:
    """Remember a handled event id. Returns False if it was already recorded."""
    db.add(ProcessedBillingEvent(event_id=event_id, event_type=event_type, outcome=outcome))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return False
    return True
