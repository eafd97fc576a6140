"""Tests for traveler wishlists."""

from __future__ import annotations

import datetime as dt

import pytest
from pydantic import ValidationError

from factories import make_user
from tripcomposer.errors import ConflictError, NotFoundError, ValidationFailedError
from tripcomposer.modules.wishlist import (
    AddWishlistItemInput,
    BatchCheckInput,
    UpdateWishlistItemInput,
    WishlistItemType,
    WishlistService,
    WishlistSort,
)


def _item(item_id: str, name: str, item_type: WishlistItemType = WishlistItemType.DESTINATION, **extra):
    return AddWishlistItemInput(item_type=item_type, item_id=item_id, item_name=name, **extra)


@pytest.fixture
def wishlist(db_session) -> WishlistService:
    return WishlistService(db_session)


class TestWishlistInputs:
    """Tests for wishlist payload validation."""

    def test_dates_must_be_ordered(self) -> None:
        start = dt.datetime(2027, 1, 10, tzinfo=dt.UTC)
        with pytest.raises(ValidationError):
            _item("goa", "Goa", planned_date_start=start, planned_date_end=start - dt.timedelta(days=1))

    def test_tag_limits(self) -> None:
        with pytest.raises(ValidationError):
            _item("goa", "Goa", tags=["x" * 51])
        with pytest.raises(ValidationError):
            UpdateWishlistItemInput(tags=[f"t{i}" for i in range(21)])

    def test_priority_range(self) -> None:
        with pytest.raises(ValidationError):
            _item("goa", "Goa", priority=11)


class TestWishlistService:
    """Tests for per-user wishlist storage."""

    @pytest.mark.asyncio
    async def test_add_and_duplicate(self, wishlist, db_session) -> None:
        user = await make_user(db_session)
        item = await wishlist.add_item(user.id, _item("goa", "Goa", tags=["beach"]))
        assert item.item_type == "destination"
        assert item.tags == ["beach"]

        with pytest.raises(ConflictError) as exc_info:
            await wishlist.add_item(user.id, _item("goa", "Goa again"))
        assert exc_info.value.code == "WISHLIST_DUPLICATE"

    @pytest.mark.asyncio
    async def test_same_item_for_different_users(self, wishlist, db_session) -> None:
        first = await make_user(db_session)
        second = await make_user(db_session)
        await wishlist.add_item(first.id, _item("goa", "Goa"))
        await wishlist.add_item(second.id, _item("goa", "Goa"))
        assert len(await wishlist.list_items(second.id)) == 1

    @pytest.mark.asyncio
    async def test_update_item(self, wishlist, db_session) -> None:
        user = await make_user(db_session)
        item = await wishlist.add_item(user.id, _item("goa", "Goa"))
        updated = await wishlist.update_item(user.id, item.id, UpdateWishlistItemInput(priority=7, notes="Monsoon"))
        assert updated.priority == 7
        assert updated.notes == "Monsoon"

    @pytest.mark.asyncio
    async def test_update_requires_changes(self, wishlist, db_session) -> None:
        user = await make_user(db_session)
        item = await wishlist.add_item(user.id, _item("goa", "Goa"))
        with pytest.raises(ValidationFailedError):
            await wishlist.update_item(user.id, item.id, UpdateWishlistItemInput())

    @pytest.mark.asyncio
    async def test_other_users_items_are_invisible(self, wishlist, db_session) -> None:
        owner = await make_user(db_session)
        other = await make_user(db_session)
        item = await wishlist.add_item(owner.id, _item("goa", "Goa"))

        with pytest.raises(NotFoundError):
            await wishlist.update_item(other.id, item.id, UpdateWishlistItemInput(priority=1))
        assert not await wishlist.remove_item(other.id, item.id)
        assert await wishlist.remove_item(owner.id, item.id)

    @pytest.mark.asyncio
    async def test_remove_by_key(self, wishlist, db_session) -> None:
        user = await make_user(db_session)
        await wishlist.add_item(user.id, _item("agent-7", "Ravi", WishlistItemType.AGENT))
        assert await wishlist.remove_by_key(user.id, WishlistItemType.AGENT, "agent-7")
        assert not await wishlist.remove_by_key(user.id, WishlistItemType.AGENT, "agent-7")

    @pytest.mark.asyncio
    async def test_filters_and_sorting(self, wishlist, db_session) -> None:
        user = await make_user(db_session)
        await wishlist.add_item(user.id, _item("goa", "Goa", priority=2, tags=["beach"]))
        await wishlist.add_item(user.id, _item("leh", "Leh", priority=9, tags=["mountains"], notes="Bike trip"))
        await wishlist.add_item(user.id, _item("p-1", "Kerala backwaters", WishlistItemType.PROPOSAL, priority=5))

        by_priority = await wishlist.list_items(user.id, sort_by=WishlistSort.PRIORITY)
        assert [i.item_id for i in by_priority] == ["leh", "p-1", "goa"]
        by_name = await wishlist.list_items(user.id, sort_by=WishlistSort.NAME, ascending=True)
        assert [i.item_name for i in by_name] == ["Goa", "Kerala backwaters", "Leh"]

        proposals = await wishlist.list_items(user.id, item_type=WishlistItemType.PROPOSAL)
        assert [i.item_id for i in proposals] == ["p-1"]
        assert [i.item_id for i in await wishlist.list_items(user.id, tags=["beach"])] == ["goa"]
        assert [i.item_id for i in await wishlist.list_items(user.id, search="bike")] == ["leh"]

    @pytest.mark.asyncio
    async def test_summary_and_tags(self, wishlist, db_session) -> None:
        user = await make_user(db_session)
        await wishlist.add_item(user.id, _item("goa", "Goa", tags=["beach", "family"]))
        await wishlist.add_item(user.id, _item("it-1", "Golden triangle", WishlistItemType.ITINERARY, tags=["family"]))

        summary = await wishlist.summary(user.id)
        assert summary.destination_count == 1
        assert summary.itinerary_count == 1
        assert summary.total_count == 2
        assert summary.last_added_at is not None
        assert await wishlist.tags(user.id) == ["beach", "family"]

    @pytest.mark.asyncio
    async def test_batch_check(self, wishlist, db_session) -> None:
        user = await make_user(db_session)
        await wishlist.add_item(user.id, _item("goa", "Goa"))
        await wishlist.add_item(user.id, _item("agent-7", "Ravi", WishlistItemType.AGENT))

        result = await wishlist.batch_check(
            user.id,
            BatchCheckInput(
                items=[
                    {"item_type": "destination", "item_id": "goa"},
                    {"item_type": "destination", "item_id": "leh"},
                    {"item_type": "agent", "item_id": "agent-7"},
                ]
            ),
        )
        assert result == {"destination:goa": True, "destination:leh": False, "agent:agent-7": True}
