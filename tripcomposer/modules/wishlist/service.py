"""Traveler wishlists: saved destinations, proposals, itineraries and agents."""

from __future__ import annotations

from typing import Optional

from sqlalchemy import delete, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tripcomposer.clock import as_utc
from tripcomposer.database import session_scope
from tripcomposer.errors import ConflictError, NotFoundError, ValidationFailedError
from tripcomposer.logging_config import get_logger
from tripcomposer.modules.wishlist.models import (
    AddWishlistItemInput,
    BatchCheckInput,
    UpdateWishlistItemInput,
    WishlistItem,
    WishlistItemType,
    WishlistSort,
    WishlistSummary,
)

logger = get_logger(__name__)

_SORT_COLUMNS = {
    WishlistSort.RECENT: WishlistItem.created_at,
    WishlistSort.OLDEST: WishlistItem.created_at,
    WishlistSort.PRIORITY: WishlistItem.priority,
    WishlistSort.NAME: WishlistItem.item_name,
    WishlistSort.BUDGET: WishlistItem.estimated_budget,
}


class WishlistService:
    """Per-user wishlist storage. Every operation is scoped to the owner."""

    def __init__(self, session: Optional[AsyncSession] = None) -> None:
        self._session = session

    async def add_item(self, user_id: str, data: AddWishlistItemInput) -> WishlistItem:
        async with session_scope(self._session) as session:
            existing = await session.scalar(
                select(WishlistItem.id).where(
                    WishlistItem.user_id == user_id,
                    WishlistItem.item_type == data.item_type.value,
                    WishlistItem.item_id == data.item_id,
                )
            )
            if existing is not None:
                raise ConflictError("Item already in wishlist", code="WISHLIST_DUPLICATE")
            item = WishlistItem(user_id=user_id, **data.model_dump(mode="python"))
            item.item_type = data.item_type.value
            session.add(item)
            try:
                await session.flush()
            except IntegrityError as exc:
                raise ConflictError("Item already in wishlist", code="WISHLIST_DUPLICATE") from exc
        logger.info("wishlist_item_added", user_id=user_id, item_type=data.item_type.value, item_id=data.item_id)
        return item

    async def update_item(self, user_id: str, wishlist_id: str, data: UpdateWishlistItemInput) -> WishlistItem:
        changes = data.model_dump(exclude_unset=True)
        if not changes:
            raise ValidationFailedError("No fields to update", code="WISHLIST_NO_CHANGES")
        async with session_scope(self._session) as session:
            item = await session.get(WishlistItem, wishlist_id)
            if item is None or item.user_id != user_id:
                raise NotFoundError("Item not found", code="WISHLIST_NOT_FOUND")
            for field, value in changes.items():
                setattr(item, field, value)
        logger.info("wishlist_item_updated", user_id=user_id, wishlist_id=wishlist_id, fields=sorted(changes))
        return item

    async def remove_item(self, user_id: str, wishlist_id: str) -> bool:
        async with session_scope(self._session) as session:
            result = await session.execute(
                delete(WishlistItem).where(WishlistItem.id == wishlist_id, WishlistItem.user_id == user_id)
            )
        removed = bool(result.rowcount)
        logger.info("wishlist_item_removed", user_id=user_id, wishlist_id=wishlist_id, removed=removed)
        return removed

    async def remove_by_key(self, user_id: str, item_type: WishlistItemType, item_id: str) -> bool:
        async with session_scope(self._session) as session:
            result = await session.execute(
                delete(WishlistItem).where(
                    WishlistItem.user_id == user_id,
                    WishlistItem.item_type == item_type.value,
                    WishlistItem.item_id == item_id,
                )
            )
        return bool(result.rowcount)

    async def list_items(
        self,
        user_id: str,
        item_type: Optional[WishlistItemType] = None,
        tags: Optional[list[str]] = None,
        search: Optional[str] = None,
        sort_by: WishlistSort = WishlistSort.RECENT,
        ascending: bool = False,
    ) -> list[WishlistItem]:
        """List a user's items, optionally filtered by type, tags and a text search."""
        query = select(WishlistItem).where(WishlistItem.user_id == user_id)
        if item_type is not None:
            query = query.where(WishlistItem.item_type == item_type.value)
        if search:
            term = f"%{search}%"
            query = query.where(or_(WishlistItem.item_name.ilike(term), WishlistItem.notes.ilike(term)))
        column = _SORT_COLUMNS[sort_by]
        asc = ascending or sort_by == WishlistSort.OLDEST
        query = query.order_by(column.asc().nulls_last() if asc else column.desc().nulls_last())

        async with session_scope(self._session) as session:
            result = await session.execute(query)
            items = list(result.scalars().all())
        if tags:
            wanted = set(tags)
            items = [item for item in items if wanted.intersection(item.tags or ())]
        return items

    async def summary(self, user_id: str) -> WishlistSummary:
        items = await self.list_items(user_id)
        counts = {t: 0 for t in WishlistItemType}
        for item in items:
            counts[WishlistItemType(item.item_type)] += 1
        return WishlistSummary(
            destination_count=counts[WishlistItemType.DESTINATION],
            proposal_count=counts[WishlistItemType.PROPOSAL],
            itinerary_count=counts[WishlistItemType.ITINERARY],
            agent_count=counts[WishlistItemType.AGENT],
            total_count=len(items),
            last_added_at=max((as_utc(i.created_at) for i in items), default=None),
        )

    async def tags(self, user_id: str) -> list[str]:
        items = await self.list_items(user_id)
        return sorted({tag for item in items for tag in (item.tags or ())})

    async def batch_check(self, user_id: str, data: BatchCheckInput) -> dict[str, bool]:
        """Map ``"type:id"`` keys to whether the item is in the user's wishlist."""
        by_type: dict[WishlistItemType, list[str]] = {}
        for key in data.items:
            by_type.setdefault(key.item_type, []).append(key.item_id)

        found: set[tuple[str, str]] = set()
        async with session_scope(self._session) as session:
            for item_type, item_ids in by_type.items():
                result = await session.execute(
                    select(WishlistItem.item_id).where(
                        WishlistItem.user_id == user_id,
                        WishlistItem.item_type == item_type.value,
                        WishlistItem.item_id.in_(item_ids),
                    )
                )
                found.update((item_type.value, item_id) for item_id in result.scalars().all())

        return {
            f"{key.item_type.value}:{key.item_id}": (key.item_type.value, key.item_id) in found for key in data.items
        }
