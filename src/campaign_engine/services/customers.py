"""Restaurant-scoped customer lookups shared by the promo and campaign services."""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_engine.errors import NotFoundError
from campaign_engine.models.customer import Customer


class CustomerNotFoundError(NotFoundError):
    """Raised when a customer id does not belong to the restaurant in scope."""

    def __init__(self, customer_id: UUID, restaurant_id: UUID) -> None:
        self.customer_id = customer_id
        self.restaurant_id = restaurant_id
        super().__init__(f"Customer {customer_id} not found for restaurant {restaurant_id}")


async def require_customer(session: AsyncSession, restaurant_id: UUID, customer_id: UUID) -> None:
    stmt = select(Customer.id).where(
        Customer.id == customer_id,
        Customer.restaurant_id == restaurant_id,
    )
    if (await session.execute(stmt)).scalar_one_or_none() is None:
        raise CustomerNotFoundError(customer_id, restaurant_id)


__all__ = ["CustomerNotFoundError", "require_customer"]
