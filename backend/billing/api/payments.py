"""
Payment API endpoints.

WHAT: Payments, confirmations, refunds, payouts, transaction history,
saved cards, Connect onboarding, hosted checkout for invoices, the
financial summary and the Stripe webhook.

WHY: Money moves only through these endpoints and the webhook, and every
one of them goes through PaymentService so the Transaction ledger and the
invoices it settles never disagree.

HOW: FastAPI routers over PaymentService. The Stripe and email services
are FastAPI dependencies so tests can override them. The webhook has no
bearer auth; it is authenticated by the Stripe signature instead.
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from billing.core.deps import get_current_user, require_admin, require_role
from billing.db.session import get_db
from billing.models.transaction import TransactionStatus, TransactionType
from billing.models.user import User, UserRole
from billing.schemas.common import ApiResponse, Page
from billing.schemas.payment import (
    AddPaymentMethodRequest,
    CheckoutResponse,
    ConfirmPaymentRequest,
    ConnectOnboardingResponse,
    FinancialSummary,
    PaymentMethodRemoved,
    PaymentResponse,
    PayoutRequest,
    ProcessPaymentRequest,
    RefundRequest,
    SavedPaymentMethodResponse,
    TransactionResponse,
    WebhookAck,
)
from billing.services.email import EmailService, get_email_service
from billing.services.payment_service import PaymentResult, PaymentService
from billing.services.stripe_service import StripeService, get_stripe_service


router = APIRouter(prefix="/payments", tags=["payments"])
webhooks_router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def get_payment_service(
    db: AsyncSession = Depends(get_db),
    stripe_service: StripeService = Depends(get_stripe_service),
    email_service: EmailService = Depends(get_email_service),
) -> PaymentService:
    """Per-request PaymentService over the request's session."""
    return PaymentService(db, stripe_service, email_service)


def _payment_to_response(result: PaymentResult) -> PaymentResponse:
    return PaymentResponse(
        transaction=TransactionResponse.model_validate(result.transaction),
        payment_intent_id=result.payment_intent_id,
        client_secret=result.client_secret,
        requires_action=result.requires_action,
        next_action=result.next_action,
        receipt_url=result.receipt_url,
    )


# ============================================================================
# Payments
# ============================================================================


@router.post(
    "/process",
    response_model=ApiResponse[PaymentResponse],
    status_code=status.HTTP_200_OK,
    summary="Process payment",
    description="Pay an invoice, project or proposal (CLIENT only)",
)
async def process_payment(
    data: ProcessPaymentRequest,
    current_user: User = Depends(require_role(UserRole.CLIENT)),
    service: PaymentService = Depends(get_payment_service),
) -> ApiResponse[PaymentResponse]:
    """
    Process a payment.

    WHAT: Card payments go through a Stripe payment intent; bank transfers
    stay pending until reconciled and the client is emailed instructions.

    Raises:
        InvalidAmountError (400): Amount not positive
        OverpaymentError (400): Amount exceeds what is due (reject policy)
        UnsupportedPaymentMethodError (400): paypal, wallet, other
        OwnershipError (403): Context belongs to another client
        PaymentGatewayError (502): Stripe refused or failed
    """
    result = await service.process_payment(
        current_user,
        amount=data.amount,
        method=data.method,
        currency=data.currency,
        invoice_id=data.invoice_id,
        project_id=data.project_id,
        proposal_id=data.proposal_id,
        payment_method_id=data.payment_method_id,
        description=data.description,
        billing_details=data.billing_details,
        metadata=data.metadata,
    )
    return ApiResponse(
        message=result.message or f"Payment {result.status.value}",
        data=_payment_to_response(result),
    )


@router.post(
    "/confirm",
    response_model=ApiResponse[PaymentResponse],
    status_code=status.HTTP_200_OK,
    summary="Confirm payment",
)
async def confirm_payment(
    data: ConfirmPaymentRequest,
    current_user: User = Depends(require_role(UserRole.CLIENT)),
    service: PaymentService = Depends(get_payment_service),
) -> ApiResponse[PaymentResponse]:
    result = await service.confirm_payment(
        current_user,
        payment_intent_id=data.payment_intent_id,
        payment_method_id=data.payment_method_id,
    )
    return ApiResponse(
        message=result.message or f"Payment {result.status.value}",
        data=_payment_to_response(result),
    )


@router.post(
    "/refund",
    response_model=ApiResponse[TransactionResponse],
    status_code=status.HTTP_200_OK,
    summary="Refund payment",
)
async def refund_payment(
    data: RefundRequest,
    current_user: User = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
) -> ApiResponse[TransactionResponse]:
    """
    Refund a completed payment, fully or partially.

    Raises:
        InvalidAmountError (400): More than the refundable remainder
        InvalidStateTransitionError (400): Not a completed payment
        OwnershipError (403): Not a party to the payment
        PaymentGatewayError (502): Stripe refused the refund
    """
    refund = await service.process_refund(
        current_user,
        transaction_ref=data.transaction_ref,
        amount=data.amount,
        reason=data.reason,
        description=data.description,
    )
    return ApiResponse(
        message="Refund processed",
        data=TransactionResponse.model_validate(refund),
    )


@router.post(
    "/payout",
    response_model=ApiResponse[TransactionResponse],
    status_code=status.HTTP_200_OK,
    summary="Pay a consultant",
    description="Initiate a consultant payout (ADMIN only)",
)
async def process_payout(
    data: PayoutRequest,
    current_user: User = Depends(require_admin),
    service: PaymentService = Depends(get_payment_service),
) -> ApiResponse[TransactionResponse]:
    payout = await service.process_payout(
        current_user,
        consultant_id=data.consultant_id,
        amount=data.amount,
        method=data.method,
        currency=data.currency,
        project_id=data.project_id,
        description=data.description,
    )
    return ApiResponse(
        message=f"Payout {payout.status.value}",
        data=TransactionResponse.model_validate(payout),
    )


# ============================================================================
# Transactions
# ============================================================================


@router.get(
    "/transactions",
    response_model=ApiResponse[Page[TransactionResponse]],
    status_code=status.HTTP_200_OK,
    summary="List transactions",
)
async def list_transactions(
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=20, ge=1, le=100),
    transaction_type: Optional[TransactionType] = Query(default=None, alias="type"),
    status_filter: Optional[TransactionStatus] = Query(default=None, alias="status"),
    invoice_id: Optional[int] = Query(default=None),
    project_id: Optional[int] = Query(default=None),
    start_date: Optional[datetime] = Query(default=None),
    end_date: Optional[datetime] = Query(default=None),
    current_user: User = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
) -> ApiResponse[Page[TransactionResponse]]:
    """Newest first. Admins see the organization, others their own."""
    items, total = await service.list_transactions(
        current_user,
        skip=skip,
        limit=limit,
        transaction_type=transaction_type,
        status=status_filter,
        invoice_id=invoice_id,
        project_id=project_id,
        start_date=start_date,
        end_date=end_date,
    )
    return ApiResponse(
        data=Page(
            items=[TransactionResponse.model_validate(t) for t in items],
            total=total,
            skip=skip,
            limit=limit,
        )
    )


@router.get(
    "/transactions/{transaction_ref}",
    response_model=ApiResponse[TransactionResponse],
    status_code=status.HTTP_200_OK,
    summary="Get transaction",
)
async def get_transaction(
    transaction_ref: str,
    current_user: User = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
) -> ApiResponse[TransactionResponse]:
    transaction = await service.get_transaction(current_user, transaction_ref)
    return ApiResponse(data=TransactionResponse.model_validate(transaction))


# ============================================================================
# Saved payment methods and Connect onboarding
# ============================================================================


@router.get(
    "/methods",
    response_model=ApiResponse[List[SavedPaymentMethodResponse]],
    status_code=status.HTTP_200_OK,
    summary="List saved payment methods",
)
async def list_payment_methods(
    current_user: User = Depends(require_role(UserRole.CLIENT)),
    service: PaymentService = Depends(get_payment_service),
) -> ApiResponse[List[SavedPaymentMethodResponse]]:
    methods = await service.get_client_payment_methods(current_user)
    return ApiResponse(data=[SavedPaymentMethodResponse.model_validate(m) for m in methods])


@router.post(
    "/methods",
    response_model=ApiResponse[SavedPaymentMethodResponse],
    status_code=status.HTTP_201_CREATED,
    summary="Save a payment method",
)
async def add_payment_method(
    data: AddPaymentMethodRequest,
    current_user: User = Depends(require_role(UserRole.CLIENT)),
    service: PaymentService = Depends(get_payment_service),
) -> ApiResponse[SavedPaymentMethodResponse]:
    """
    Attach a Stripe.js payment method to the client's customer.

    The first saved method becomes the default.

    Raises:
        PaymentGatewayError (502): Stripe refused the method
    """
    method = await service.add_client_payment_method(
        current_user,
        payment_method_id=data.payment_method_id,
        set_as_default=data.set_as_default,
    )
    return ApiResponse(
        message="Payment method saved",
        data=SavedPaymentMethodResponse.model_validate(method),
    )


@router.delete(
    "/methods/{payment_method_id}",
    response_model=ApiResponse[PaymentMethodRemoved],
    status_code=status.HTTP_200_OK,
    summary="Remove a saved payment method",
)
async def remove_payment_method(
    payment_method_id: str,
    current_user: User = Depends(require_role(UserRole.CLIENT)),
    service: PaymentService = Depends(get_payment_service),
) -> ApiResponse[PaymentMethodRemoved]:
    default_id = await service.remove_client_payment_method(current_user, payment_method_id)
    return ApiResponse(
        message="Payment method removed",
        data=PaymentMethodRemoved(
            payment_method_id=payment_method_id,
            default_payment_method_id=default_id,
        ),
    )


@router.put(
    "/methods/{payment_method_id}/default",
    response_model=ApiResponse[SavedPaymentMethodResponse],
    status_code=status.HTTP_200_OK,
    summary="Set the default payment method",
)
async def set_default_payment_method(
    payment_method_id: str,
    current_user: User = Depends(require_role(UserRole.CLIENT)),
    service: PaymentService = Depends(get_payment_service),
) -> ApiResponse[SavedPaymentMethodResponse]:
    method = await service.set_default_payment_method(current_user, payment_method_id)
    return ApiResponse(
        message="Default payment method updated",
        data=SavedPaymentMethodResponse.model_validate(method),
    )


@router.post(
    "/connect/onboard",
    response_model=ApiResponse[ConnectOnboardingResponse],
    status_code=status.HTTP_200_OK,
    summary="Start Stripe Connect onboarding",
    description="Create the consultant's Connect account if needed (CONSULTANT only)",
)
async def onboard_connect_account(
    current_user: User = Depends(require_role(UserRole.CONSULTANT)),
    service: PaymentService = Depends(get_payment_service),
) -> ApiResponse[ConnectOnboardingResponse]:
    """
    Return a hosted onboarding link for the consultant's Connect account.

    Calling again resumes onboarding with a fresh link.
    """
    onboarding = await service.setup_consultant_connect_account(current_user)
    return ApiResponse(
        message="Connect account created" if onboarding.created else "Onboarding link created",
        data=ConnectOnboardingResponse.model_validate(onboarding),
    )


# ============================================================================
# Checkout and summary
# ============================================================================


@router.post(
    "/checkout/invoice/{invoice_id}",
    response_model=ApiResponse[CheckoutResponse],
    status_code=status.HTTP_200_OK,
    summary="Create invoice checkout session",
)
async def create_invoice_checkout(
    invoice_id: int,
    current_user: User = Depends(require_role(UserRole.CLIENT)),
    service: PaymentService = Depends(get_payment_service),
) -> ApiResponse[CheckoutResponse]:
    """
    Create a Stripe Checkout session for what is left to pay on an invoice.

    The client is redirected to session_url; checkout.session.completed
    records the payment.
    """
    result = await service.create_invoice_checkout_session(current_user, invoice_id)
    return ApiResponse(
        data=CheckoutResponse(
            session_id=result.session_id,
            session_url=result.session_url,
            expires_at=result.expires_at,
        )
    )


@router.get(
    "/summary",
    response_model=ApiResponse[FinancialSummary],
    status_code=status.HTTP_200_OK,
    summary="Financial summary",
)
async def get_financial_summary(
    current_user: User = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
) -> ApiResponse[FinancialSummary]:
    summary = await service.get_financial_summary(current_user)
    summary["recent_transactions"] = [
        TransactionResponse.model_validate(t) for t in summary["recent_transactions"]
    ]
    return ApiResponse(data=FinancialSummary(**summary))


# ============================================================================
# Webhooks
# ============================================================================


@webhooks_router.post(
    "/stripe",
    response_model=WebhookAck,
    status_code=status.HTTP_200_OK,
    summary="Stripe webhook",
    description="Handle Stripe webhook events (no auth required)",
)
async def handle_stripe_webhook(
    request: Request,
    stripe_service: StripeService = Depends(get_stripe_service),
    service: PaymentService = Depends(get_payment_service),
) -> WebhookAck:
    """
    Handle Stripe webhook events.

    Security: Uses signature verification to validate the webhook came
    from Stripe (OWASP A02).

    Raises:
        ValidationError (400): If signature verification fails
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature", "")

    event = stripe_service.verify_webhook_signature(payload, signature)
    result = await service.handle_gateway_event(event)

    return WebhookAck(
        event_type=result.event_type,
        handled=result.handled,
        detail=result.detail,
    )
