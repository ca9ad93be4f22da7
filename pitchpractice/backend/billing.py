import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, Optional, Protocol, Tuple

import stripe

from .auth import AuthUser
from .config import Settings
from .constants import DAYPASS_HOURS
from .errors import ApiError
from .models import EntitlementRecord, utc_now
from .plans import PURCHASABLE_PLANS, Plan
from .storage import Store, new_id


logger = logging.getLogger("uvicorn.error")

CHECKOUT_COMPLETED = "checkout.session.completed"


class PaymentError(RuntimeError):
    def __init__(self, message: str, kind: str = "api") -> None:
        super().__init__(message)
        self.kind = kind


@dataclass
class CheckoutSessionInfo:
    id: str
    payment_status: Optional[str] = None
    customer_id: Optional[str] = None
    price_id: Optional[str] = None
    url: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


class PaymentGateway(Protocol):
    def create_checkout_session(
        self,
        *,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
        customer_email: Optional[str] = None,
    ) -> CheckoutSessionInfo:
        pass

    def retrieve_checkout_session(self, checkout_session_id: str) -> CheckoutSessionInfo:
        pass

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> Tuple[str, Optional[CheckoutSessionInfo]]:
        pass

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        pass


def _field(obj: Any, name: str) -> Any:
    if obj is None:
        return None
    try:
        return obj[name]
    except (KeyError, TypeError, IndexError):
        return getattr(obj, name, None)


def _session_info(session: Any) -> CheckoutSessionInfo:
    price_id = None
    line_items = _field(session, "line_items")
    items = _field(line_items, "data") or []
    if items:
        price_id = _field(_field(items[0], "price"), "id")
    customer = _field(session, "customer")
    if customer is not None and not isinstance(customer, str):
        customer = _field(customer, "id")
    metadata = _field(session, "metadata") or {}
    return CheckoutSessionInfo(
        id=str(_field(session, "id")),
        payment_status=_field(session, "payment_status"),
        customer_id=customer,
        price_id=price_id,
        url=_field(session, "url"),
        metadata={key: str(metadata[key]) for key in metadata.keys()} if metadata else {},
    )


def _payment_error(exc: Exception) -> PaymentError:
    if isinstance(exc, stripe.InvalidRequestError):
        kind = "invalid_request"
    elif isinstance(exc, stripe.AuthenticationError):
        kind = "authentication"
    elif isinstance(exc, stripe.APIConnectionError):
        kind = "connection"
    else:
        kind = "api"
    message = getattr(exc, "user_message", None) or str(exc)
    return PaymentError(f"Stripe {kind} error: {message}", kind=kind)


class StripePaymentGateway:
    def __init__(self, secret_key: Optional[str], webhook_secret: Optional[str]) -> None:
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret

    def _api_key(self) -> str:
        if not self._secret_key:
            raise PaymentError("STRIPE_SECRET_KEY is not set.", kind="config")
        return self._secret_key

    def create_checkout_session(
        self,
        *,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
        customer_email: Optional[str] = None,
    ) -> CheckoutSessionInfo:
        params: Dict[str, Any] = {
            "mode": "payment",
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
        }
        if customer_email:
            params["customer_email"] = customer_email
        try:
            session = stripe.checkout.Session.create(api_key=self._api_key(), **params)
        except stripe.StripeError as exc:
            raise _payment_error(exc) from exc
        return _session_info(session)

    def retrieve_checkout_session(self, checkout_session_id: str) -> CheckoutSessionInfo:
        try:
            session = stripe.checkout.Session.retrieve(
                checkout_session_id,
                api_key=self._api_key(),
                expand=["line_items"],
            )
        except stripe.StripeError as exc:
            raise _payment_error(exc) from exc
        return _session_info(session)

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> Tuple[str, Optional[CheckoutSessionInfo]]:
        if not self._webhook_secret:
            raise PaymentError("STRIPE_WEBHOOK_SECRET is not set.", kind="config")
        if not signature:
            raise PaymentError("Missing Stripe-Signature header.", kind="signature")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except stripe.SignatureVerificationError as exc:
            raise PaymentError("Invalid webhook signature.", kind="signature") from exc
        except ValueError as exc:
            raise PaymentError("Invalid webhook payload.", kind="signature") from exc
        event_type = str(_field(event, "type"))
        if event_type != CHECKOUT_COMPLETED:
            return event_type, None
        session_id = _field(_field(_field(event, "data"), "object"), "id")
        # Webhook payloads omit line items; fetch the expanded session.
        return event_type, self.retrieve_checkout_session(str(session_id))

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        try:
            session = stripe.billing_portal.Session.create(
                api_key=self._api_key(),
                customer=customer_id,
                return_url=return_url,
            )
        except stripe.StripeError as exc:
            raise _payment_error(exc) from exc
        return str(_field(session, "url"))


def _price_for(settings: Settings, plan: Plan) -> str:
    price_id = settings.stripe_prices.get(plan.value, "")
    if not price_id.startswith("price_"):
        raise ApiError(
            500,
            "Stripe price is not configured",
            details=f"STRIPE_PRICE_{plan.value.upper()} must be set to a Stripe price ID (price_...).",
        )
    return price_id


def _plan_for(settings: Settings, info: CheckoutSessionInfo) -> Plan:
    for plan_name, price_id in settings.stripe_prices.items():
        if info.price_id and price_id == info.price_id:
            return Plan(plan_name)
    return Plan.parse(info.metadata.get("plan"))


def _expiry_for(plan: Plan):
    if plan is Plan.DAYPASS:
        return utc_now() + timedelta(hours=DAYPASS_HOURS)
    return None


def _payment_failure(exc: PaymentError, error: str) -> ApiError:
    logger.warning("stripe_error kind=%s message=%s", exc.kind, exc)
    return ApiError(500, error, details=str(exc), kind=exc.kind)


def create_checkout(
    gateway: PaymentGateway,
    settings: Settings,
    plan_name: str,
    user: Optional[AuthUser],
    session_id: Optional[str],
) -> CheckoutSessionInfo:
    plan = Plan.parse(plan_name)
    if plan not in PURCHASABLE_PLANS:
        raise ApiError(400, "Invalid plan", details="plan must be one of: starter, coach, daypass")
    price_id = _price_for(settings, plan)
    metadata = {"plan": plan.value}
    if user is not None:
        metadata["user_id"] = user.id
    if session_id:
        metadata["session_id"] = session_id
    try:
        info = gateway.create_checkout_session(
            price_id=price_id,
            success_url=f"{settings.app_base_url}/billing/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{settings.app_base_url}/upgrade",
            metadata=metadata,
            customer_email=user.email if user else None,
        )
    except PaymentError as exc:
        raise _payment_failure(exc, "Failed to create checkout session") from exc
    logger.info("checkout_created plan=%s checkout_session_id=%s", plan.value, info.id)
    return info


def upsert_entitlement(
    store: Store,
    *,
    checkout_session_id: str,
    plan: Plan,
    user_id: Optional[str],
    session_id: Optional[str],
    price_id: Optional[str],
    customer_id: Optional[str],
) -> EntitlementRecord:
    """Insert or update the entitlement keyed by checkout session; existing owners are kept."""
    existing = store.get_entitlement(checkout_session_id)
    if existing is None:
        now = utc_now()
        record = EntitlementRecord(
            id=new_id(),
            plan=plan.value,
            stripe_checkout_session_id=checkout_session_id,
            created_at=now,
            updated_at=now,
            user_id=user_id,
            session_id=session_id,
            stripe_price_id=price_id,
            stripe_customer_id=customer_id,
            expires_at=_expiry_for(plan),
        )
        if store.insert_entitlement(record):
            return record
        existing = store.get_entitlement(checkout_session_id)
        if existing is None:
            raise RuntimeError(f"Entitlement {checkout_session_id} vanished during upsert.")

    return store.update_entitlement(
        checkout_session_id,
        plan=plan.value,
        user_id=user_id or existing.user_id,
        session_id=session_id or existing.session_id,
        stripe_price_id=price_id or existing.stripe_price_id,
        stripe_customer_id=customer_id or existing.stripe_customer_id,
        expires_at=existing.expires_at if plan.value == existing.plan else _expiry_for(plan),
    )


def sync_checkout(
    store: Store,
    gateway: PaymentGateway,
    settings: Settings,
    checkout_session_id: str,
    user: Optional[AuthUser],
    session_id: Optional[str],
) -> EntitlementRecord:
    if not checkout_session_id:
        raise ApiError(400, "checkout_session_id is required")
    try:
        info = gateway.retrieve_checkout_session(checkout_session_id)
    except PaymentError as exc:
        raise _payment_failure(exc, "Failed to retrieve checkout session") from exc
    if info.payment_status != "paid":
        raise ApiError(400, "Payment not completed", details=f"payment_status={info.payment_status}")

    plan = _plan_for(settings, info)
    if plan not in PURCHASABLE_PLANS:
        raise ApiError(400, "Could not determine plan for checkout session")

    record = upsert_entitlement(
        store,
        checkout_session_id=info.id,
        plan=plan,
        user_id=user.id if user else info.metadata.get("user_id"),
        session_id=session_id or info.metadata.get("session_id"),
        price_id=info.price_id,
        customer_id=info.customer_id,
    )
    logger.info("checkout_synced checkout_session_id=%s plan=%s user_id=%s", info.id, record.plan, record.user_id)
    return record


def handle_webhook(
    store: Store,
    gateway: PaymentGateway,
    settings: Settings,
    payload: bytes,
    signature: Optional[str],
) -> dict:
    try:
        event_type, info = gateway.parse_webhook(payload, signature)
    except PaymentError as exc:
        if exc.kind == "signature":
            raise ApiError(400, "Webhook signature verification failed", details=str(exc)) from exc
        raise _payment_failure(exc, "Webhook processing failed") from exc

    if info is None:
        return {"received": True, "handled": False, "type": event_type}
    if info.payment_status != "paid":
        logger.info("webhook_ignored checkout_session_id=%s payment_status=%s", info.id, info.payment_status)
        return {"received": True, "handled": False, "type": event_type}

    plan = _plan_for(settings, info)
    if plan not in PURCHASABLE_PLANS:
        logger.warning("webhook_unknown_plan checkout_session_id=%s", info.id)
        return {"received": True, "handled": False, "type": event_type}

    now = utc_now()
    inserted = store.insert_entitlement(
        EntitlementRecord(
            id=new_id(),
            plan=plan.value,
            stripe_checkout_session_id=info.id,
            created_at=now,
            updated_at=now,
            user_id=info.metadata.get("user_id"),
            session_id=info.metadata.get("session_id"),
            stripe_price_id=info.price_id,
            stripe_customer_id=info.customer_id,
            expires_at=_expiry_for(plan),
        )
    )
    logger.info("webhook_checkout_completed checkout_session_id=%s inserted=%s", info.id, inserted)
    return {"received": True, "handled": True, "type": event_type}


def create_portal(store: Store, gateway: PaymentGateway, settings: Settings, user: AuthUser) -> str:
    customer_id = store.latest_customer_id(user.id)
    if not customer_id:
        raise ApiError(400, "No billing account found", details="Complete a purchase before opening the billing portal.")
    try:
        return gateway.create_portal_session(customer_id, f"{settings.app_base_url}/settings")
    except PaymentError as exc:
        raise _payment_failure(exc, "Failed to create billing portal session") from exc
