"""
Base Data Access Object (DAO) class.

WHY: The DAO pattern keeps SQL out of the reconciliation, entitlement
and notification code. Each DAO is bound to one session, the caller owns
the transaction (see db.session.session_scope).
"""

from typing import Any, Generic, Optional, Type, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.models.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseDAO(Generic[ModelType]):
    """
    Shared insert and primary key lookup for the subscription, plan and
    notification DAOs.

    NOTE: Nothing here commits. Writes are flushed so database defaults
    and ids are visible before the enclosing transaction ends.
    """

    def __init__(self, model: Type[ModelType], session: AsyncSession):
        self.model = model
        self.session = session

    async def create(self, **kwargs: Any) -> ModelType:
        """
        Insert a row built from field values.

        Raises:
            IntegrityError: If a unique constraint (e.g. one subscription
                per organization) is violated
        """
        instance = self.model(**kwargs)
        self.session.add(instance)
        await self.session.flush()
        await self.session.refresh(instance)
        return instance

    async def get_by_id(self, id: Any) -> Optional[ModelType]:
        """Primary key lookup, None if the row does not exist."""
        return await self.session.get(self.model, id)
