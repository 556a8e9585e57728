# Copyright © 2025 Phaethon Order LLC. All rights reserved. Provided solely for evaluation. See LICENSE.

import asyncio
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from billing.client import StripeBillingClient
from billing.errors import (
    AuthenticationFailure,
    BillingNotConfigured,
    PlanAlreadyActive,
    ProviderUnavailable,
    SessionOwnershipError,
    UnsupportedTransition,
)
from billing.provisioning import create_checkout, create_portal_session
from billing.reconciler import BillingReconciler
from billing.signature import verify_event
from database.crud import get_or_create_user
from database.models import UserAccount
from database.session import Base, engine, get_db
from utils.auth import AuthContext, get_auth_context, load_auth_config
from utils.config import BillingSettings, load_settings
from utils.logger import setup_logger
from utils.plans import PLAN_CATALOG

load_dotenv()

logger = setup_logger()

GENERIC_BILLING_ERROR = "Billing is temporarily unavailable. Please try again."


class CheckoutRequest(BaseModel):
    plan: str


class CheckoutResponse(BaseModel):
    session_id: str
    checkout_url: str
    plan: str
    credits: int


class CheckoutStatusResponse(BaseModel):
    status: Optional[str]
    success: bool
    applied: bool = False
    plan: Optional[str] = None
    credits: Optional[int] = None


class PortalResponse(BaseModel):
    url: str


class UserBalanceResponse(BaseModel):
    email: Optional[str]
    credits: int
    plan_type: str


class PlanResponse(BaseModel):
    key: str
    name: str
    credits: int
    price_configured: bool


app = FastAPI(title="plan-credits", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "https://localhost:3000",
        "https://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup() -> None:
    Base.metadata.create_all(bind=engine)
    settings = load_settings()
    app.state.settings = settings
    app.state.billing_client = (
        StripeBillingClient(settings.stripe_secret_key) if settings.stripe_secret_key else None
    )
    if app.state.billing_client is None:
        logger.warning("STRIPE_SECRET_KEY is not set; billing endpoints will return 500.")


def get_settings(request: Request) -> BillingSettings:
    settings = getattr(request.app.state, "settings", None)
    if settings is None:
        settings = load_settings()
        request.app.state.settings = settings
    return settings


def get_billing_client(request: Request) -> Any:
    client = getattr(request.app.state, "billing_client", None)
    if client is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Stripe API key is not configured.",
        )
    return client


def get_reconciler(
    client: Any = Depends(get_billing_client),
    settings: BillingSettings = Depends(get_settings),
) -> BillingReconciler:
    return BillingReconciler(client, settings)


def get_current_user(
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
    settings: BillingSettings = Depends(get_settings),
) -> UserAccount:
    return get_or_create_user(db, auth.sub, auth.email, signup_credits=settings.signup_credits)


@app.get("/api/health")
async def health_check(settings: BillingSettings = Depends(get_settings)) -> Dict[str, Any]:
    """Health check endpoint that reports which integrations are configured."""
    auth_config = load_auth_config()
    return {
        "status": "ok",
        "auth0_configured": bool(auth_config.domain and auth_config.audience and auth_config.issuer),
        "stripe_configured": bool(settings.stripe_secret_key),
        "stripe_webhook_configured": bool(settings.stripe_webhook_secret),
        "prices_configured": {plan.value: bool(settings.price_for(plan)) for plan in PLAN_CATALOG},
    }


@app.get("/api/plans", response_model=List[PlanResponse])
async def list_plans(settings: BillingSettings = Depends(get_settings)) -> List[PlanResponse]:
    return [
        PlanResponse(
            key=plan.key.value,
            name=plan.name,
            credits=plan.credits,
            price_configured=bool(settings.price_for(plan.key)),
        )
        for plan in sorted(PLAN_CATALOG.values(), key=lambda p: p.credits)
    ]


@app.get("/api/user/me", response_model=UserBalanceResponse)
async def get_current_user_balance(user: UserAccount = Depends(get_current_user)) -> UserBalanceResponse:
    return UserBalanceResponse(email=user.email, credits=user.credits, plan_type=user.plan_type)


@app.post("/api/checkout", response_model=CheckoutResponse)
async def start_checkout(
    payload: CheckoutRequest,
    user: UserAccount = Depends(get_current_user),
    db: Session = Depends(get_db),
    client: Any = Depends(get_billing_client),
    settings: BillingSettings = Depends(get_settings),
) -> CheckoutResponse:
    try:
        result = await asyncio.to_thread(create_checkout, db, client, settings, user, payload.plan)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except UnsupportedTransition as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except PlanAlreadyActive as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except BillingNotConfigured as exc:
        logger.error("Checkout unavailable for user %s: %s", user.id, exc)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    except ProviderUnavailable as exc:
        logger.error("Checkout creation failed for user %s: %s", user.id, exc)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=GENERIC_BILLING_ERROR,
        ) from exc

    return CheckoutResponse(**result)


@app.get("/api/checkout", response_model=CheckoutStatusResponse)
async def checkout_status(
    session_id: Optional[str] = Query(default=None),
    user: UserAccount = Depends(get_current_user),
    db: Session = Depends(get_db),
    reconciler: BillingReconciler = Depends(get_reconciler),
) -> CheckoutStatusResponse:
    """
    Poll a checkout session after the redirect back from Stripe.
    Applies the plan change immediately if the webhook has not arrived yet.
    """
    if not session_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing session_id")

    try:
        result = await asyncio.to_thread(reconciler.confirm_checkout, db, session_id, user_id=user.id)
    except SessionOwnershipError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except ProviderUnavailable as exc:
        logger.error("Failed to retrieve Stripe session %s: %s", session_id, exc)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=GENERIC_BILLING_ERROR,
        ) from exc

    return CheckoutStatusResponse(**result)


@app.post("/api/billing/portal", response_model=PortalResponse)
async def billing_portal(
    user: UserAccount = Depends(get_current_user),
    db: Session = Depends(get_db),
    client: Any = Depends(get_billing_client),
    settings: BillingSettings = Depends(get_settings),
) -> PortalResponse:
    try:
        url = await asyncio.to_thread(create_portal_session, db, client, settings, user)
    except ProviderUnavailable as exc:
        logger.error("Billing portal session failed for user %s: %s", user.id, exc)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=GENERIC_BILLING_ERROR,
        ) from exc
    return PortalResponse(url=url)


@app.post("/api/webhooks/billing")
async def billing_webhook(
    request: Request,
    db: Session = Depends(get_db),
    settings: BillingSettings = Depends(get_settings),
    reconciler: BillingReconciler = Depends(get_reconciler),
) -> JSONResponse:
    if not settings.stripe_webhook_secret:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Stripe webhook secret is not configured.",
        )

    payload = await request.body()
    try:
        event = verify_event(
            payload,
            request.headers.get("stripe-signature"),
            settings.stripe_webhook_secret,
            tolerance=settings.webhook_tolerance,
        )
    except AuthenticationFailure as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    try:
        outcome = await asyncio.to_thread(reconciler.handle_event, db, event)
    except ProviderUnavailable as exc:
        logger.error("Stripe unavailable while processing event %s: %s", event.get("id"), exc)
        return JSONResponse(status_code=500, content={"error": "Webhook handler failed"})
    except Exception:
        logger.exception("Error processing Stripe event %s (%s)", event.get("id"), event.get("type"))
        return JSONResponse(status_code=500, content={"error": "Webhook handler failed"})

    return JSONResponse(status_code=200, content={"received": True, "outcome": outcome.status})
