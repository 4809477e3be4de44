"""
Invoice management API endpoints.

WHAT: RESTful API for the invoice lifecycle.

WHY: Invoices are how the platform bills:
1. Clients for consulting work
2. The platform itself, on behalf of consultants
3. Recurring engagements, one generated invoice per period

HOW: FastAPI router over InvoiceService with:
- Org-scoped queries (multi-tenancy)
- RBAC (admins manage everything, consultants their own invoices,
  clients view and pay what is addressed to them)
- The {success, message, data} response envelope
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from billing.core.deps import get_current_user, require_role
from billing.db.session import get_db
from billing.models.invoice import InvoiceType
from billing.models.invoice_state import InvoiceStatus
from billing.models.user import User, UserRole
from billing.schemas.common import ApiResponse, Page
from billing.schemas.invoice import (
    CancelRequest,
    InvoiceCreate,
    InvoiceResponse,
    InvoiceStats,
    InvoiceUpdate,
    ReminderRequest,
)
from billing.schemas.payment import TransactionResponse
from billing.services.email import EmailService, get_email_service
from billing.services.invoice_service import InvoiceService


router = APIRouter(prefix="/invoices", tags=["invoices"])


def get_invoice_service(
    db: AsyncSession = Depends(get_db),
    email_service: EmailService = Depends(get_email_service),
) -> InvoiceService:
    """Per-request InvoiceService over the request's session."""
    return InvoiceService(db, email_service)


def _invoice_to_response(invoice) -> InvoiceResponse:
    return InvoiceResponse.model_validate(invoice)


# ============================================================================
# Invoice CRUD Endpoints
# ============================================================================


@router.post(
    "",
    response_model=ApiResponse[InvoiceResponse],
    status_code=status.HTTP_201_CREATED,
    summary="Create invoice",
    description="Create a draft invoice (ADMIN or CONSULTANT)",
)
async def create_invoice(
    data: InvoiceCreate,
    current_user: User = Depends(require_role(UserRole.ADMIN, UserRole.CONSULTANT)),
    service: InvoiceService = Depends(get_invoice_service),
) -> ApiResponse[InvoiceResponse]:
    """
    Create a new invoice in DRAFT status.

    WHAT: Numbers the invoice, derives the due date from the payment terms
    and computes every amount from the line items.

    Raises:
        ValidationError (400): Invalid items, parties or schedule
        ResourceNotFoundError (404): Unknown client, consultant, project or proposal
    """
    invoice = await service.create_invoice(current_user, data.model_dump())
    return ApiResponse(message="Invoice created", data=_invoice_to_response(invoice))


@router.get(
    "",
    response_model=ApiResponse[Page[InvoiceResponse]],
    status_code=status.HTTP_200_OK,
    summary="List invoices",
    description="Paginated invoices: the organization for admins, your own otherwise",
)
async def list_invoices(
    skip: int = Query(default=0, ge=0, description="Number of items to skip"),
    limit: int = Query(default=20, ge=1, le=100, description="Maximum items to return"),
    status_filter: Optional[InvoiceStatus] = Query(
        default=None,
        alias="status",
        description="Filter by invoice status",
    ),
    invoice_type: Optional[InvoiceType] = Query(default=None, description="Filter by type"),
    client_id: Optional[int] = Query(default=None),
    consultant_id: Optional[int] = Query(default=None),
    project_id: Optional[int] = Query(default=None),
    search: Optional[str] = Query(default=None, max_length=100, description="Number or notes"),
    current_user: User = Depends(get_current_user),
    service: InvoiceService = Depends(get_invoice_service),
) -> ApiResponse[Page[InvoiceResponse]]:
    invoices, total = await service.list_invoices(
        current_user,
        skip=skip,
        limit=limit,
        status=status_filter,
        invoice_type=invoice_type,
        client_id=client_id,
        consultant_id=consultant_id,
        project_id=project_id,
        search=search,
    )
    return ApiResponse(
        data=Page(
            items=[_invoice_to_response(inv) for inv in invoices],
            total=total,
            skip=skip,
            limit=limit,
        )
    )


@router.get(
    "/stats",
    response_model=ApiResponse[InvoiceStats],
    status_code=status.HTTP_200_OK,
    summary="Get invoice statistics",
)
async def get_invoice_stats(
    current_user: User = Depends(get_current_user),
    service: InvoiceService = Depends(get_invoice_service),
) -> ApiResponse[InvoiceStats]:
    """
    Get invoice statistics.

    WHY: Quick overview of:
    - Total outstanding balance
    - Payments received
    - Invoice distribution by status
    """
    stats = await service.get_stats(current_user)
    return ApiResponse(data=InvoiceStats(**stats))


@router.get(
    "/{invoice_id}",
    response_model=ApiResponse[InvoiceResponse],
    status_code=status.HTTP_200_OK,
    summary="Get invoice",
)
async def get_invoice(
    invoice_id: int,
    current_user: User = Depends(get_current_user),
    service: InvoiceService = Depends(get_invoice_service),
) -> ApiResponse[InvoiceResponse]:
    """
    Get invoice by ID.

    Raises:
        ResourceNotFoundError (404): If invoice not found in the organization
        OwnershipError (403): Caller is not a party to the invoice
    """
    invoice = await service.get_invoice(current_user, invoice_id)
    return ApiResponse(data=_invoice_to_response(invoice))


@router.patch(
    "/{invoice_id}",
    response_model=ApiResponse[InvoiceResponse],
    status_code=status.HTTP_200_OK,
    summary="Update invoice",
    description="Edit a draft invoice",
)
async def update_invoice(
    invoice_id: int,
    data: InvoiceUpdate,
    current_user: User = Depends(require_role(UserRole.ADMIN, UserRole.CONSULTANT)),
    service: InvoiceService = Depends(get_invoice_service),
) -> ApiResponse[InvoiceResponse]:
    """
    Update a draft invoice.

    Raises:
        InvalidStateTransitionError (400): If invoice is no longer a draft
    """
    invoice = await service.update_invoice(
        current_user, invoice_id, data.model_dump(exclude_unset=True)
    )
    return ApiResponse(message="Invoice updated", data=_invoice_to_response(invoice))


# ============================================================================
# Lifecycle Endpoints
# ============================================================================


@router.post(
    "/{invoice_id}/send",
    response_model=ApiResponse[InvoiceResponse],
    status_code=status.HTTP_200_OK,
    summary="Send invoice",
)
async def send_invoice(
    invoice_id: int,
    current_user: User = Depends(require_role(UserRole.ADMIN, UserRole.CONSULTANT)),
    service: InvoiceService = Depends(get_invoice_service),
) -> ApiResponse[InvoiceResponse]:
    """
    Send an invoice to its recipient.

    WHAT: Transitions invoice from DRAFT to SENT and emails it.

    Raises:
        InvalidStateTransitionError (400): If invoice not in draft
    """
    invoice = await service.send_invoice(current_user, invoice_id)
    return ApiResponse(message="Invoice sent", data=_invoice_to_response(invoice))


@router.post(
    "/{invoice_id}/view",
    response_model=ApiResponse[InvoiceResponse],
    status_code=status.HTTP_200_OK,
    summary="Mark invoice viewed",
)
async def view_invoice(
    invoice_id: int,
    current_user: User = Depends(get_current_user),
    service: InvoiceService = Depends(get_invoice_service),
) -> ApiResponse[InvoiceResponse]:
    invoice = await service.mark_viewed(current_user, invoice_id)
    return ApiResponse(data=_invoice_to_response(invoice))


@router.post(
    "/{invoice_id}/remind",
    response_model=ApiResponse[InvoiceResponse],
    status_code=status.HTTP_200_OK,
    summary="Send payment reminder",
)
async def remind_invoice(
    invoice_id: int,
    data: Optional[ReminderRequest] = None,
    current_user: User = Depends(require_role(UserRole.ADMIN, UserRole.CONSULTANT)),
    service: InvoiceService = Depends(get_invoice_service),
) -> ApiResponse[InvoiceResponse]:
    """
    Email a payment reminder for a payable invoice.

    Raises:
        InvalidStateTransitionError (400): Invoice is not payable
        EmailServiceError (502): Reminder could not be delivered
    """
    reminder_type = data.reminder_type if data else "manual"
    invoice = await service.send_reminder(current_user, invoice_id, reminder_type)
    return ApiResponse(message="Reminder sent", data=_invoice_to_response(invoice))


@router.post(
    "/{invoice_id}/cancel",
    response_model=ApiResponse[InvoiceResponse],
    status_code=status.HTTP_200_OK,
    summary="Cancel invoice",
)
async def cancel_invoice(
    invoice_id: int,
    data: Optional[CancelRequest] = None,
    current_user: User = Depends(require_role(UserRole.ADMIN, UserRole.CONSULTANT)),
    service: InvoiceService = Depends(get_invoice_service),
) -> ApiResponse[InvoiceResponse]:
    """
    Cancel an invoice.

    Constraint: Paid or refunded invoices cannot be cancelled.

    Raises:
        InvalidStateTransitionError (400): If invoice cannot be cancelled
    """
    invoice = await service.cancel_invoice(current_user, invoice_id, data.reason if data else None)
    return ApiResponse(message="Invoice cancelled", data=_invoice_to_response(invoice))


@router.post(
    "/{invoice_id}/recurring/generate",
    response_model=ApiResponse[InvoiceResponse],
    status_code=status.HTTP_201_CREATED,
    summary="Generate next recurring invoice",
)
async def generate_recurring_invoice(
    invoice_id: int,
    current_user: User = Depends(require_role(UserRole.ADMIN, UserRole.CONSULTANT)),
    service: InvoiceService = Depends(get_invoice_service),
) -> ApiResponse[InvoiceResponse]:
    """
    Generate the next invoice of a recurring series.

    Raises:
        RecurringConfigError (400): Not recurring, or the series has ended
    """
    successor = await service.generate_recurring(current_user, invoice_id)
    return ApiResponse(
        message="Recurring invoice generated",
        data=_invoice_to_response(successor),
    )


@router.get(
    "/{invoice_id}/transactions",
    response_model=ApiResponse[List[TransactionResponse]],
    status_code=status.HTTP_200_OK,
    summary="List invoice transactions",
)
async def list_invoice_transactions(
    invoice_id: int,
    current_user: User = Depends(get_current_user),
    service: InvoiceService = Depends(get_invoice_service),
) -> ApiResponse[List[TransactionResponse]]:
    transactions = await service.list_invoice_transactions(current_user, invoice_id)
    return ApiResponse(data=[TransactionResponse.model_validate(t) for t in transactions])
