"""
Base Data Access Object (DAO) class.

WHY: The DAO pattern separates database operations from business logic,
making the codebase more testable, maintainable, and allowing easier
database technology changes in the future.
"""

from typing import Generic, TypeVar, Type, Optional, List, Any
from sqlalchemy import select, delete, func
from sqlalchemy.ext.asyncio import AsyncSession

from billing.models.base import Base

# Type variable for model class
ModelType = TypeVar("ModelType", bound=Base)


class BaseDAO(Generic[ModelType]):
    """
    Base Data Access Object providing CRUD operations for all models.

    Type Parameters:
        ModelType: The SQLAlchemy model class this DAO manages
    """

    def __init__(self, model: Type[ModelType], session: AsyncSession):
        """
        Initialize DAO with model class and database session.

        Args:
            model: The SQLAlchemy model class
            session: Async database session
        """
        self.model = model
        self.session = session

    def _apply_filters(self, query, filters: dict):
        for field, value in filters.items():
            if hasattr(self.model, field):
                query = query.where(getattr(self.model, field) == value)
        return query

    async def create(self, **kwargs: Any) -> ModelType:
        """
        Create a new record.

        Args:
            **kwargs: Field values for the new record

        Returns:
            The created model instance with database-generated fields populated

        Raises:
            IntegrityError: If unique constraints are violated
        """
        instance = self.model(**kwargs)
        return await self.add(instance)

    async def add(self, instance: ModelType) -> ModelType:
        """
        Persist an already built instance.

        WHY: Models that build related rows themselves (refund
        transactions, recurring successors) hand us the instance instead
        of keyword arguments.
        """
        self.session.add(instance)
        await self.session.flush()  # Flush to get auto-generated fields
        await self.session.refresh(instance)
        return instance

    async def get_by_id(self, id: int) -> Optional[ModelType]:
        """
        Retrieve a single record by primary key.

        Args:
            id: Primary key value

        Returns:
            The model instance if found, None otherwise
        """
        result = await self.session.execute(select(self.model).where(self.model.id == id))
        return result.scalar_one_or_none()

    async def get_all(self, skip: int = 0, limit: int = 100, **filters: Any) -> List[ModelType]:
        """
        Retrieve multiple records with optional pagination and filtering.

        Args:
            skip: Number of records to skip (for pagination)
            limit: Maximum number of records to return
            **filters: Field name to value filters (e.g., org_id=1)

        Returns:
            List of model instances matching the filters
        """
        query = self._apply_filters(select(self.model), filters)
        query = query.offset(skip).limit(limit)

        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def update(self, id: int, **kwargs: Any) -> Optional[ModelType]:
        """
        Update an existing record.

        WHY: Updates go through the ORM instead of a bulk UPDATE statement
        so mapper listeners run. Invoices recompute their totals and
        transactions their net in those listeners.

        Args:
            id: Primary key of the record to update
            **kwargs: Fields to update

        Returns:
            Updated model instance if found, None otherwise
        """
        instance = await self.get_by_id(id)
        if instance is None:
            return None

        for field, value in kwargs.items():
            setattr(instance, field, value)

        await self.session.flush()
        await self.session.refresh(instance)
        return instance

    async def save(self, instance: ModelType) -> ModelType:
        """Flush pending attribute changes on a loaded instance."""
        await self.session.flush()
        await self.session.refresh(instance)
        return instance

    async def delete(self, id: int) -> bool:
        """
        Delete a record by primary key.

        Args:
            id: Primary key of the record to delete

        Returns:
            True if a record was deleted, False if not found
        """
        result = await self.session.execute(delete(self.model).where(self.model.id == id))
        return result.rowcount > 0

    async def count(self, **filters: Any) -> int:
        """
        Count records matching filters.

        Args:
            **filters: Field name to value filters

        Returns:
            Number of records matching the filters
        """
        query = self._apply_filters(select(func.count()).select_from(self.model), filters)
        result = await self.session.execute(query)
        return result.scalar_one()

    async def exists(self, **filters: Any) -> bool:
        """
        Check if any records matching filters exist.

        Args:
            **filters: Field name to value filters

        Returns:
            True if at least one matching record exists
        """
        query = self._apply_filters(select(self.model.id), filters).limit(1)
        result = await self.session.execute(query)
        return result.scalar_one_or_none() is not None

    async def get_by_id_and_org(self, id: int, org_id: int) -> Optional[ModelType]:
        """
        Retrieve a record by ID, ensuring it belongs to the specified organization.

        WHY: Critical for preventing cross-organization data access (A01: Broken Access Control).

        Args:
            id: Primary key value
            org_id: Organization ID that must own the record

        Returns:
            The model instance if found and belongs to org, None otherwise

        Raises:
            AttributeError: If the model doesn't have an org_id field
        """
        if not hasattr(self.model, "org_id"):
            raise AttributeError(
                f"{self.model.__name__} is not a multi-tenant model (no org_id field)"
            )

        result = await self.session.execute(
            select(self.model).where(
                self.model.id == id,
                self.model.org_id == org_id,
            )
        )
        return result.scalar_one_or_none()
