"""
Shared API schemas.

WHAT: The response envelope and pagination wrapper used by every billing
endpoint.

WHY: Clients handle one shape for every success response,
{"success": true, "message": ..., "data": ...}, mirroring the error
envelope produced by the exception handlers.
"""

from typing import Generic, List, Optional, TypeVar

from pydantic import BaseModel


T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """Success envelope."""

    success: bool = True
    message: Optional[str] = None
    data: Optional[T] = None


class Page(BaseModel, Generic[T]):
    """
    Paginated list.

    WHY: Standard pagination structure for list endpoints.
    """

    items: List[T]
    total: int
    skip: int
    limit: int
