# Copyright © 2025 Phaethon Order LLC. All rights reserved. Provided solely for evaluation. See LICENSE.
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from billing.errors import SessionOwnershipError, UnresolvableIntent, UnsupportedTransition
from billing.events import ClassifiedEvent, EventKind, classify_event
from billing.ledger import LedgerResult, LedgerWriter
from billing.metadata import META_USER_ID, MetadataResolver
from billing.refs import first_price_id, get_field, metadata_of, subscription_ref, to_int
from billing.transitions import resolve_transition
from database.crud import get_user, get_user_summary, is_event_processed, record_processed_event
from utils.config import BillingSettings
from utils.logger import get_logger
from utils.plans import PlanType, parse_plan

logger = get_logger("billing.reconciler")

PAID_STATUSES = frozenset({"paid", "no_payment_required"})
LIVE_SUBSCRIPTION_STATUSES = frozenset({"active", "trialing"})

OUTCOME_APPLIED = "applied"
OUTCOME_NOOP = "noop"
OUTCOME_IGNORED = "ignored"
OUTCOME_DUPLICATE = "duplicate_event"
OUTCOME_UNRESOLVABLE = "unresolvable"
OUTCOME_UNSUPPORTED = "unsupported_transition"


def is_subscription_checkout(session: Dict[str, Any]) -> bool:
    return get_field(session, "mode") == "subscription" and bool(subscription_ref(session))


def is_paid(session: Dict[str, Any]) -> bool:
    return get_field(session, "payment_status") in PAID_STATUSES


@dataclass(frozen=True)
class WebhookOutcome:
    event_id: Optional[str]
    event_type: str
    status: str
    detail: Optional[str] = None
    result: Optional[LedgerResult] = None


class BillingReconciler:
    """Turns Stripe signals into ledger mutations.

    Two ingress paths share this object: ``handle_event`` for verified webhook
    events and ``confirm_checkout`` for the client poll after checkout. Both end
    in the same ``LedgerWriter``, which keeps the outcome identical whichever
    path (or both) gets there first.
    """

    def __init__(self, client: Any, settings: BillingSettings, ledger: Optional[LedgerWriter] = None) -> None:
        self._client = client
        self._settings = settings
        self._resolver = MetadataResolver(client)
        self._ledger = ledger or LedgerWriter(settings.resubscribe_policy)
        self._handlers: Dict[EventKind, Callable[[Session, ClassifiedEvent], WebhookOutcome]] = {
            EventKind.CHECKOUT_COMPLETED: self._handle_checkout_completed,
            EventKind.INVOICE_PAID: self._handle_invoice_paid,
            EventKind.SUBSCRIPTION_UPDATED: self._handle_subscription_updated,
            EventKind.SUBSCRIPTION_DELETED: self._handle_subscription_deleted,
        }

    # --- webhook path -------------------------------------------------

    def handle_event(self, db: Session, event: Dict[str, Any]) -> WebhookOutcome:
        classified = classify_event(event)
        logger.info("Received Stripe webhook event: %s (id: %s)", classified.event_type, classified.event_id)

        if classified.event_id and is_event_processed(db, classified.event_id):
            logger.info("Stripe event %s already processed; acknowledging", classified.event_id)
            return WebhookOutcome(classified.event_id, classified.event_type, OUTCOME_DUPLICATE)

        if classified.kind is None:
            logger.info("Unhandled Stripe event type: %s", classified.event_type)
            return WebhookOutcome(classified.event_id, classified.event_type, OUTCOME_IGNORED)

        handler = self._handlers[classified.kind]
        try:
            outcome = handler(db, classified)
        except UnresolvableIntent as exc:
            logger.error("Dropping Stripe event %s (%s): %s", classified.event_id, classified.event_type, exc)
            outcome = WebhookOutcome(classified.event_id, classified.event_type, OUTCOME_UNRESOLVABLE, str(exc))
        except UnsupportedTransition as exc:
            logger.warning("Rejected Stripe event %s (%s): %s", classified.event_id, classified.event_type, exc)
            outcome = WebhookOutcome(classified.event_id, classified.event_type, OUTCOME_UNSUPPORTED, str(exc))

        if classified.event_id:
            record_processed_event(
                db,
                event_id=classified.event_id,
                event_type=classified.event_type,
                outcome=outcome.status,
            )
        return outcome

    def _handle_checkout_completed(self, db: Session, event: ClassifiedEvent) -> WebhookOutcome:
        session = event.payload
        if not is_subscription_checkout(session):
            return self._ignored(event, "checkout session is not a subscription checkout")
        if not is_paid(session):
            return self._ignored(event, "checkout session is not paid yet")

        logger.info(
            "Checkout session %s completed for subscription %s",
            get_field(session, "id"),
            subscription_ref(session),
        )
        result = self._reconcile(
            db,
            session,
            EventKind.CHECKOUT_COMPLETED,
            source=f"webhook:{event.event_type}",
            event_id=event.event_id,
            reference=get_field(session, "id"),
        )
        return self._outcome(event, result)

    def _handle_invoice_paid(self, db: Session, event: ClassifiedEvent) -> WebhookOutcome:
        invoice = event.payload
        if not subscription_ref(invoice):
            return self._ignored(event, f"invoice {get_field(invoice, 'id')} has no subscription")
        result = self._reconcile(
            db,
            invoice,
            EventKind.INVOICE_PAID,
            source=f"webhook:{event.event_type}",
            event_id=event.event_id,
        )
        return self._outcome(event, result)

    def _handle_subscription_updated(self, db: Session, event: ClassifiedEvent) -> WebhookOutcome:
        subscription = event.payload
        status = get_field(subscription, "status")
        if status not in LIVE_SUBSCRIPTION_STATUSES:
            return self._ignored(event, f"subscription status is {status}")
        price_plan = self._settings.plan_for_price(first_price_id(subscription))
        result = self._reconcile(
            db,
            subscription,
            EventKind.SUBSCRIPTION_UPDATED,
            source=f"webhook:{event.event_type}",
            event_id=event.event_id,
            plan_override=price_plan,
        )
        return self._outcome(event, result)

    def _handle_subscription_deleted(self, db: Session, event: ClassifiedEvent) -> WebhookOutcome:
        subscription = event.payload
        result = self._reconcile(
            db,
            subscription,
            EventKind.SUBSCRIPTION_DELETED,
            source=f"webhook:{event.event_type}",
            event_id=event.event_id,
        )
        return self._outcome(event, result)

    # --- confirmation poller ------------------------------------------

    def confirm_checkout(self, db: Session, session_id: str, *, user_id: int) -> Dict[str, Any]:
        """Re-derive the checkout mutation for ``session_id`` on behalf of ``user_id``.

        Raises SessionOwnershipError when the session names a different user.
        """
        session = self._client.retrieve_checkout_session(session_id)
        owner = to_int(metadata_of(session).get(META_USER_ID)) or to_int(get_field(session, "client_reference_id"))
        if owner is not None and owner != user_id:
            raise SessionOwnershipError("Checkout session belongs to a different user.")

        payment_status = get_field(session, "payment_status")
        response: Dict[str, Any] = {
            "status": payment_status,
            "success": is_paid(session),
            "applied": False,
        }

        if is_paid(session) and is_subscription_checkout(session):
            try:
                result = self._reconcile(
                    db,
                    session,
                    EventKind.CHECKOUT_COMPLETED,
                    source="checkout_poll",
                    reference=session_id,
                    expected_user_id=user_id,
                )
            except (UnresolvableIntent, UnsupportedTransition) as exc:
                logger.warning("Checkout session %s not applied: %s", session_id, exc)
            else:
                response["applied"] = result.applied

        summary = get_user_summary(db, user_id) or {}
        response["plan"] = summary.get("plan_type")
        response["credits"] = summary.get("credits")
        return response

    # --- shared sequence ------------------------------------------------

    def _reconcile(
        self,
        db: Session,
        obj: Dict[str, Any],
        kind: EventKind,
        *,
        source: str,
        event_id: Optional[str] = None,
        reference: Optional[str] = None,
        plan_override: Optional[PlanType] = None,
        expected_user_id: Optional[int] = None,
    ) -> LedgerResult:
        intent = self._resolver.resolve(db, obj)
        if expected_user_id is not None and intent.user_id != expected_user_id:
            raise SessionOwnershipError("Checkout session belongs to a different user.")

        user = get_user(db, intent.user_id)
        if user is None:
            raise UnresolvableIntent(f"User {intent.user_id} from {intent.source.value} does not exist")

        current_plan = parse_plan(user.plan_type) or PlanType.FREE
        target_plan = plan_override or intent.target_plan or current_plan
        transition = resolve_transition(current_plan, target_plan, kind)
        return self._ledger.apply(
            db,
            user_id=user.id,
            transition=transition,
            subscription_id=subscription_ref(obj),
            source=source,
            event_id=event_id,
            reference=reference,
        )

    @staticmethod
    def _ignored(event: ClassifiedEvent, detail: str) -> WebhookOutcome:
        logger.info("Ignoring Stripe event %s (%s): %s", event.event_id, event.event_type, detail)
        return WebhookOutcome(event.event_id, event.event_type, OUTCOME_IGNORED, detail)

    @staticmethod
    def _outcome(event: ClassifiedEvent, result: LedgerResult) -> WebhookOutcome:
        status = OUTCOME_APPLIED if result.applied else OUTCOME_NOOP
        return WebhookOutcome(event.event_id, event.event_type, status, result.reason, result)
