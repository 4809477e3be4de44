"""
Stripe gateway client for marketplace payments.

WHAT: A thin service over the Stripe SDK covering every money movement
the billing core asks of the gateway: customers and their saved payment
methods, payment intents, refunds, Connect onboarding and transfers,
hosted checkout and webhook verification.

WHY: The gateway's answer is the source of truth for whether money
moved. Wrapping the SDK:
1. Converts Decimal amounts to integer cents in one place
2. Returns plain dataclasses instead of StripeObjects, so callers and
   tests never depend on SDK internals
3. Turns every stripe.StripeError into PaymentGatewayError (502) with an
   error snapshot the ledger can store

HOW: Module-level SDK configuration with a pinned API version, one
service class, and get_stripe_service() as the FastAPI dependency.
No retries: a failed call surfaces as a failed request.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional, Dict, Any, List

import stripe

from billing.core.config import settings
from billing.core.exceptions import PaymentGatewayError, ValidationError

logger = logging.getLogger(__name__)


# ============================================================================
# Stripe Configuration
# ============================================================================


def configure_stripe() -> None:
    """
    Configure Stripe SDK with API key from settings.

    HOW: Sets the stripe.api_key module-level variable and pins the API
    version so gateway payloads keep the shape we parse.
    """
    stripe.api_key = settings.STRIPE_SECRET_KEY
    stripe.api_version = settings.STRIPE_API_VERSION


# Initialize Stripe on module load
configure_stripe()


def to_cents(amount: Decimal) -> int:
    """Convert a money amount to integer minor units, rounding half-up."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(amount_cents: Optional[int]) -> Decimal:
    if amount_cents is None:
        return Decimal("0.00")
    return (Decimal(amount_cents) / 100).quantize(Decimal("0.01"))


def gateway_error_snapshot(error: stripe.StripeError) -> Dict[str, Any]:
    """
    Extract {code, message, type, param} from a Stripe error.

    WHY: Failed transactions store this snapshot so support can see why
    the card was declined without digging through gateway logs.
    """
    detail = getattr(error, "error", None)
    return {
        "code": getattr(error, "code", None),
        "message": getattr(error, "user_message", None) or str(error),
        "type": getattr(detail, "type", None) if detail is not None else None,
        "param": getattr(error, "param", None),
    }


# ============================================================================
# Data Classes
# ============================================================================


class CheckoutSessionStatus(str, Enum):
    """Stripe Checkout Session status values."""

    OPEN = "open"
    COMPLETE = "complete"
    EXPIRED = "expired"


@dataclass
class StripeCustomer:
    """
    Represents a Stripe customer.

    WHAT: Data container for customer information from Stripe.
    """

    id: str
    """Stripe customer ID (cus_xxx)."""

    email: Optional[str] = None
    name: Optional[str] = None
    metadata: Optional[Dict[str, str]] = None


@dataclass
class PaymentIntent:
    """
    Represents a Stripe PaymentIntent.

    WHY: The payment service maps status onto the transaction and copies
    the charge, receipt and card details onto the ledger row.
    """

    id: str
    """Stripe PaymentIntent ID (pi_xxx)."""

    amount: int
    """Amount in cents."""

    currency: str
    status: str
    """succeeded, processing, requires_payment_method, requires_action, canceled, ..."""

    client_secret: Optional[str] = None
    customer_id: Optional[str] = None
    charge_id: Optional[str] = None
    receipt_url: Optional[str] = None
    next_action: Optional[Dict[str, Any]] = None
    payment_method_details: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, str]] = None

    @property
    def requires_action(self) -> bool:
        return self.status == "requires_action"


@dataclass
class RefundResult:
    """A refund created on the gateway."""

    id: str
    amount: int
    status: str
    payment_intent_id: Optional[str] = None


@dataclass
class TransferResult:
    """A Connect transfer to a consultant's account."""

    id: str
    amount: int
    currency: str
    destination: str


@dataclass
class SavedPaymentMethod:
    """
    A payment method saved on a Stripe customer.

    Only display details are kept; card numbers never reach our servers.
    """

    id: str
    """Stripe payment method ID (pm_xxx)."""

    type: str = "card"
    brand: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None
    customer_id: Optional[str] = None
    is_default: bool = False
    """Whether this is the client's default, as recorded on ClientProfile."""


@dataclass
class ConnectAccount:
    """A consultant's Stripe Connect (Express) account."""

    id: str
    """Stripe account ID (acct_xxx)."""

    email: Optional[str] = None
    details_submitted: bool = False
    payouts_enabled: bool = False


@dataclass
class AccountLink:
    """Single-use onboarding link for a Connect account."""

    url: str
    expires_at: int
    """Unix timestamp after which the link must be regenerated."""


@dataclass
class CheckoutSession:
    """
    Represents a Stripe Checkout Session.

    WHAT: Data container for checkout session information.
    """

    id: str
    """Stripe Checkout Session ID (cs_xxx)."""

    url: str
    """URL to redirect user to for payment."""

    status: CheckoutSessionStatus
    payment_intent_id: Optional[str] = None
    amount_total: Optional[int] = None
    currency: str = "usd"
    customer_id: Optional[str] = None
    metadata: Optional[Dict[str, str]] = None


@dataclass
class WebhookEvent:
    """
    Represents a verified Stripe webhook event.

    WHY: Structured event data for type-safe webhook handling.
    """

    id: str
    """Event ID (evt_xxx)."""

    type: str
    """Event type (e.g., payment_intent.succeeded)."""

    data: Dict[str, Any] = field(default_factory=dict)
    """The event's data.object."""

    created: int = 0


def _as_dict(obj: Any) -> Dict[str, Any]:
    return obj.to_dict() if hasattr(obj, "to_dict") else dict(obj)


def _first_charge(intent: Dict[str, Any]) -> Dict[str, Any]:
    """The latest charge of an intent, expanded or listed, as a dict."""
    latest = intent.get("latest_charge")
    if isinstance(latest, dict):
        return latest
    charges = (intent.get("charges") or {}).get("data") or []
    if charges:
        return charges[0]
    return {"id": latest} if latest else {}


def payment_intent_from_stripe(intent: Dict[str, Any]) -> PaymentIntent:
    charge = _first_charge(intent)
    card = ((charge.get("payment_method_details") or {}).get("card")) or None
    return PaymentIntent(
        id=intent["id"],
        amount=intent["amount"],
        currency=intent["currency"],
        status=intent["status"],
        client_secret=intent.get("client_secret"),
        customer_id=intent.get("customer"),
        charge_id=charge.get("id"),
        receipt_url=charge.get("receipt_url"),
        next_action=intent.get("next_action"),
        payment_method_details=(
            {
                "brand": card.get("brand"),
                "last4": card.get("last4"),
                "exp_month": card.get("exp_month"),
                "exp_year": card.get("exp_year"),
            }
            if card
            else None
        ),
        metadata=intent.get("metadata"),
    )


def payment_method_from_stripe(method: Dict[str, Any]) -> SavedPaymentMethod:
    card = method.get("card") or {}
    return SavedPaymentMethod(
        id=method["id"],
        type=method.get("type", "card"),
        brand=card.get("brand"),
        last4=card.get("last4"),
        exp_month=card.get("exp_month"),
        exp_year=card.get("exp_year"),
        customer_id=method.get("customer"),
    )


# ============================================================================
# Stripe Service
# ============================================================================


class StripeService:
    """
    Service for Stripe payment operations.

    WHAT: High-level interface for Stripe payment processing.

    WHY: Centralizes the gateway integration so the payment service
    deals in Decimals and dataclasses and can be tested with a mock.

    HOW: Uses Stripe Python SDK; every call is logged and every SDK error
    is re-raised as PaymentGatewayError.
    """

    def __init__(self, api_key: Optional[str] = None):
        """
        Initialize Stripe service.

        Args:
            api_key: Optional Stripe API key (defaults to settings)
        """
        if api_key:
            stripe.api_key = api_key

    def _gateway_error(self, action: str, error: stripe.StripeError, **context: Any) -> PaymentGatewayError:
        snapshot = gateway_error_snapshot(error)
        logger.error(
            f"Stripe {action} failed: {snapshot['message']}",
            extra={"stripe_action": action, "stripe_code": snapshot["code"], **context},
        )
        return PaymentGatewayError(
            message=f"Payment gateway error: {snapshot['message']}",
            gateway_error=snapshot,
            **context,
        )

    # ========================================================================
    # Customer Management
    # ========================================================================

    async def create_customer(
        self,
        email: str,
        name: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> StripeCustomer:
        """
        Create a Stripe customer for a client.

        WHY: Created lazily on the client's first card payment and cached
        on ClientProfile.stripe_customer_id, so later payments and saved
        cards reuse it.

        Raises:
            PaymentGatewayError: If Stripe API call fails
        """
        try:
            customer = stripe.Customer.create(
                email=email,
                name=name,
                description=f"Client: {email}",
                metadata=metadata or {},
            )
        except stripe.StripeError as e:
            raise self._gateway_error("customer creation", e)

        logger.info(
            f"Created Stripe customer {customer['id']}",
            extra={"stripe_customer_id": customer["id"]},
        )
        return StripeCustomer(
            id=customer["id"],
            email=customer.get("email"),
            name=customer.get("name"),
            metadata=customer.get("metadata"),
        )

    # ========================================================================
    # Payment Intents
    # ========================================================================

    async def create_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        customer_id: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        payment_method_id: Optional[str] = None,
        receipt_email: Optional[str] = None,
    ) -> PaymentIntent:
        """
        Create a PaymentIntent, confirming it at once when a payment method is given.

        Args:
            amount: Amount in major units
            currency: ISO currency code
            customer_id: Stripe customer ID
            description: Shown on the gateway dashboard
            metadata: Our references (transaction ref, invoice id, ...)
            payment_method_id: Saved or freshly collected payment method
            receipt_email: Where Stripe sends its receipt

        Returns:
            PaymentIntent with the gateway status

        Raises:
            PaymentGatewayError: If the gateway rejects the intent
        """
        params: Dict[str, Any] = {
            "amount": to_cents(amount),
            "currency": currency.lower(),
            "description": description,
            "metadata": metadata or {},
            "capture_method": "automatic",
        }
        if customer_id:
            params["customer"] = customer_id
            params["setup_future_usage"] = "off_session"
        if receipt_email:
            params["receipt_email"] = receipt_email
        if payment_method_id:
            params["payment_method"] = payment_method_id
            params["confirm"] = True
            params["expand"] = ["latest_charge"]

        try:
            intent = stripe.PaymentIntent.create(**params)
        except stripe.StripeError as e:
            raise self._gateway_error("payment intent creation", e, amount=str(amount))

        logger.info(
            f"Created payment intent {intent['id']} ({intent['status']})",
            extra={"payment_intent_id": intent["id"], "amount_cents": params["amount"]},
        )
        return payment_intent_from_stripe(intent)

    async def confirm_payment_intent(
        self,
        payment_intent_id: str,
        payment_method_id: Optional[str] = None,
    ) -> PaymentIntent:
        """
        Confirm an existing PaymentIntent.

        Raises:
            PaymentGatewayError: If confirmation fails (declines included)
        """
        params: Dict[str, Any] = {"expand": ["latest_charge"]}
        if payment_method_id:
            params["payment_method"] = payment_method_id

        try:
            intent = stripe.PaymentIntent.confirm(payment_intent_id, **params)
        except stripe.StripeError as e:
            raise self._gateway_error(
                "payment intent confirmation", e, payment_intent_id=payment_intent_id
            )

        logger.info(
            f"Confirmed payment intent {payment_intent_id} ({intent['status']})",
            extra={"payment_intent_id": payment_intent_id},
        )
        return payment_intent_from_stripe(intent)

    async def get_payment_intent(self, payment_intent_id: str) -> PaymentIntent:
        """Retrieve a PaymentIntent by ID."""
        try:
            intent = stripe.PaymentIntent.retrieve(payment_intent_id, expand=["latest_charge"])
        except stripe.StripeError as e:
            raise self._gateway_error(
                "payment intent retrieval", e, payment_intent_id=payment_intent_id
            )
        return payment_intent_from_stripe(intent)

    # ========================================================================
    # Refunds
    # ========================================================================

    async def create_refund(
        self,
        payment_intent_id: Optional[str] = None,
        charge_id: Optional[str] = None,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> RefundResult:
        """
        Create a refund for a payment (full or partial).

        Stripe only accepts duplicate, fraudulent and requested_by_customer
        as reasons; other reasons travel in metadata.

        Raises:
            ValidationError: If neither payment intent nor charge is given
            PaymentGatewayError: If refund fails
        """
        if not payment_intent_id and not charge_id:
            raise ValidationError(message="Either payment intent or charge ID is required")

        params: Dict[str, Any] = {"metadata": dict(metadata or {})}
        if payment_intent_id:
            params["payment_intent"] = payment_intent_id
        else:
            params["charge"] = charge_id
        if amount is not None:
            params["amount"] = to_cents(amount)
        if reason in ("duplicate", "fraudulent", "requested_by_customer"):
            params["reason"] = reason
        elif reason:
            params["metadata"]["reason"] = reason

        try:
            refund = stripe.Refund.create(**params)
        except stripe.StripeError as e:
            raise self._gateway_error(
                "refund", e, payment_intent_id=payment_intent_id, charge_id=charge_id
            )

        logger.info(
            f"Created refund {refund['id']}",
            extra={
                "refund_id": refund["id"],
                "payment_intent_id": payment_intent_id,
                "amount_cents": params.get("amount"),
            },
        )
        return RefundResult(
            id=refund["id"],
            amount=refund["amount"],
            status=refund["status"],
            payment_intent_id=refund.get("payment_intent"),
        )

    # ========================================================================
    # Connect transfers (consultant payouts)
    # ========================================================================

    async def create_transfer(
        self,
        amount: Decimal,
        destination: str,
        currency: str,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> TransferResult:
        """
        Transfer funds to a consultant's Connect account.

        Raises:
            PaymentGatewayError: If the transfer fails
        """
        try:
            transfer = stripe.Transfer.create(
                amount=to_cents(amount),
                currency=currency.lower(),
                destination=destination,
                description=description,
                metadata=metadata or {},
            )
        except stripe.StripeError as e:
            raise self._gateway_error("transfer", e, destination=destination)

        logger.info(
            f"Created transfer {transfer['id']} to {destination}",
            extra={"transfer_id": transfer["id"], "destination": destination},
        )
        return TransferResult(
            id=transfer["id"],
            amount=transfer["amount"],
            currency=transfer["currency"],
            destination=transfer["destination"],
        )

    # ========================================================================
    # Saved payment methods
    # ========================================================================

    async def list_payment_methods(
        self, customer_id: str, method_type: str = "card"
    ) -> List[SavedPaymentMethod]:
        """
        List the payment methods saved on a customer.

        Raises:
            PaymentGatewayError: If Stripe API call fails
        """
        try:
            methods = stripe.PaymentMethod.list(customer=customer_id, type=method_type)
        except stripe.StripeError as e:
            raise self._gateway_error("payment method listing", e, customer_id=customer_id)
        return [payment_method_from_stripe(m) for m in methods["data"]]

    async def attach_payment_method(
        self, payment_method_id: str, customer_id: str
    ) -> SavedPaymentMethod:
        """
        Attach a payment method collected by Stripe.js to a customer.

        Raises:
            PaymentGatewayError: If the method cannot be attached (already
                used by another customer, unknown id, ...)
        """
        try:
            method = stripe.PaymentMethod.attach(payment_method_id, customer=customer_id)
        except stripe.StripeError as e:
            raise self._gateway_error(
                "payment method attach",
                e,
                payment_method_id=payment_method_id,
                customer_id=customer_id,
            )

        logger.info(
            f"Attached payment method {payment_method_id} to {customer_id}",
            extra={"payment_method_id": payment_method_id, "stripe_customer_id": customer_id},
        )
        return payment_method_from_stripe(method)

    async def detach_payment_method(self, payment_method_id: str) -> SavedPaymentMethod:
        """Detach a payment method from whichever customer holds it."""
        try:
            method = stripe.PaymentMethod.detach(payment_method_id)
        except stripe.StripeError as e:
            raise self._gateway_error(
                "payment method detach", e, payment_method_id=payment_method_id
            )

        logger.info(
            f"Detached payment method {payment_method_id}",
            extra={"payment_method_id": payment_method_id},
        )
        return payment_method_from_stripe(method)

    async def set_default_payment_method(
        self, customer_id: str, payment_method_id: Optional[str]
    ) -> None:
        """
        Set the method Stripe uses for the customer's invoices.

        Args:
            customer_id: Stripe customer ID
            payment_method_id: New default, or None to clear it
        """
        try:
            stripe.Customer.modify(
                customer_id,
                invoice_settings={"default_payment_method": payment_method_id or ""},
            )
        except stripe.StripeError as e:
            raise self._gateway_error(
                "default payment method update",
                e,
                customer_id=customer_id,
                payment_method_id=payment_method_id,
            )

    # ========================================================================
    # Connect onboarding
    # ========================================================================

    async def create_connect_account(
        self,
        email: str,
        country: str,
        name: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ConnectAccount:
        """
        Create an Express Connect account for a consultant.

        WHY: Stripe payouts transfer to this account. Express accounts
        are onboarded on Stripe's hosted pages (see create_account_link),
        so we never collect identity or bank documents ourselves.

        Raises:
            PaymentGatewayError: If Stripe API call fails
        """
        try:
            account = stripe.Account.create(
                type="express",
                email=email,
                country=country,
                business_type="individual",
                capabilities={"transfers": {"requested": True}},
                business_profile={
                    "name": name,
                    "product_description": f"Consulting services on {settings.PROJECT_NAME}",
                },
                metadata=metadata or {},
            )
        except stripe.StripeError as e:
            raise self._gateway_error("connect account creation", e)

        logger.info(
            f"Created Connect account {account['id']}",
            extra={"stripe_account_id": account["id"]},
        )
        return ConnectAccount(
            id=account["id"],
            email=account.get("email"),
            details_submitted=bool(account.get("details_submitted")),
            payouts_enabled=bool(account.get("payouts_enabled")),
        )

    async def create_account_link(
        self, account_id: str, refresh_url: str, return_url: str
    ) -> AccountLink:
        """
        Create a hosted onboarding link for a Connect account.

        Links are single use and expire after a few minutes; refresh_url
        is where Stripe sends the consultant to ask for a new one.
        """
        try:
            link = stripe.AccountLink.create(
                account=account_id,
                refresh_url=refresh_url,
                return_url=return_url,
                type="account_onboarding",
            )
        except stripe.StripeError as e:
            raise self._gateway_error("account link creation", e, stripe_account_id=account_id)
        return AccountLink(url=link["url"], expires_at=link["expires_at"])

    # ========================================================================
    # Checkout Sessions
    # ========================================================================

    async def create_checkout_session(
        self,
        line_items: List[Dict[str, Any]],
        success_url: str,
        cancel_url: str,
        customer_id: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> CheckoutSession:
        """
        Create a hosted Checkout Session.

        WHY: Checkout keeps card data off our servers (PCI) and supports
        every payment method enabled on the account.

        Args:
            line_items: Stripe price_data line items
            success_url: Redirect after payment
            cancel_url: Redirect when the client backs out
            customer_id: Cached Stripe customer, if any
            metadata: Our references, echoed back by the webhook

        Raises:
            PaymentGatewayError: If Stripe API call fails
        """
        params: Dict[str, Any] = {
            "mode": "payment",
            "line_items": line_items,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata or {},
            "payment_intent_data": {"metadata": metadata or {}},
        }
        if customer_id:
            params["customer"] = customer_id

        try:
            session = stripe.checkout.Session.create(**params)
        except stripe.StripeError as e:
            raise self._gateway_error("checkout session creation", e)

        logger.info(
            f"Created checkout session {session['id']}",
            extra={"checkout_session_id": session["id"]},
        )
        return CheckoutSession(
            id=session["id"],
            url=session["url"],
            status=CheckoutSessionStatus(session["status"]),
            payment_intent_id=session.get("payment_intent"),
            amount_total=session.get("amount_total"),
            currency=session.get("currency", "usd"),
            customer_id=session.get("customer"),
            metadata=session.get("metadata"),
        )

    # ========================================================================
    # Webhook Handling
    # ========================================================================

    def verify_webhook_signature(
        self,
        payload: bytes,
        signature: str,
        webhook_secret: Optional[str] = None,
    ) -> WebhookEvent:
        """
        Verify Stripe webhook signature and parse event.

        WHY: Prevents webhook forgery (OWASP A02). An unsigned request must
        never complete a payment.

        Raises:
            ValidationError: If the signature or payload is invalid
        """
        secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET

        try:
            event = stripe.Webhook.construct_event(payload, signature, secret)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Webhook signature verification failed: {e}")
            raise ValidationError(message="Invalid webhook signature")
        except ValueError as e:
            logger.warning(f"Webhook payload could not be parsed: {e}")
            raise ValidationError(message="Invalid webhook payload")

        logger.info(
            f"Verified webhook event {event['id']} type {event['type']}",
            extra={"event_id": event["id"], "event_type": event["type"]},
        )
        return WebhookEvent(
            id=event["id"],
            type=event["type"],
            data=_as_dict(event["data"]["object"]),
            created=event["created"],
        )


# ============================================================================
# Module-level convenience functions
# ============================================================================


_stripe_service: Optional[StripeService] = None


def get_stripe_service() -> StripeService:
    """
    Get or create the global Stripe service instance.

    Used as a FastAPI dependency; tests override it with a mock.
    """
    global _stripe_service

    if _stripe_service is None:
        _stripe_service = StripeService()

    return _stripe_service
