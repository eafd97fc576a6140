"""Wishlist table and request schemas."""

from __future__ import annotations

import datetime as dt
from enum import StrEnum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator
from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint

from tripcomposer.database import Base


class WishlistItemType(StrEnum):
    DESTINATION = "destination"
    PROPOSAL = "proposal"
    ITINERARY = "itinerary"
    AGENT = "agent"


class WishlistSort(StrEnum):
    RECENT = "recent"
    OLDEST = "oldest"
    PRIORITY = "priority"
    NAME = "name"
    BUDGET = "budget"


class WishlistItem(Base):
    """Something a traveler saved for later."""

    __tablename__ = "wishlist_items"
    __table_args__ = (UniqueConstraint("user_id", "item_type", "item_id"),)

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    item_type = Column(String(16), nullable=False, index=True)
    item_id = Column(String(255), nullable=False)
    item_name = Column(String(255), nullable=False)
    item_image_url = Column(String(1024), nullable=True)
    item_metadata = Column(JSON, nullable=False, default=dict)
    notes = Column(Text, nullable=True)
    tags = Column(JSON, nullable=False, default=list)
    priority = Column(Integer, nullable=False, default=0)
    planned_date_start = Column(DateTime, nullable=True)
    planned_date_end = Column(DateTime, nullable=True)
    estimated_budget = Column(Integer, nullable=True)
    notify_on_deals = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=lambda: dt.datetime.now(dt.UTC), nullable=False, index=True)
    updated_at = Column(
        DateTime,
        default=lambda: dt.datetime.now(dt.UTC),
        onupdate=lambda: dt.datetime.now(dt.UTC),
        nullable=False,
    )


# =============================================================================
# Pydantic schemas
# =============================================================================


class _PlanFields(BaseModel):
    notes: Optional[str] = Field(default=None, max_length=2000)
    planned_date_start: Optional[dt.datetime] = None
    planned_date_end: Optional[dt.datetime] = None
    estimated_budget: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _dates_in_order(self):
        if self.planned_date_start and self.planned_date_end and self.planned_date_end < self.planned_date_start:
            raise ValueError("planned_date_end must not be before planned_date_start")
        return self


class AddWishlistItemInput(_PlanFields):
    item_type: WishlistItemType
    item_id: str = Field(..., min_length=1)
    item_name: str = Field(..., min_length=1, max_length=255)
    item_image_url: Optional[str] = None
    item_metadata: dict[str, Any] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list, max_length=20)
    priority: int = Field(default=0, ge=0, le=10)
    notify_on_deals: bool = False

    @model_validator(mode="after")
    def _tag_length(self):
        if any(len(tag) > 50 for tag in self.tags):
            raise ValueError("tags must be at most 50 characters")
        return self


class UpdateWishlistItemInput(_PlanFields):
    tags: Optional[list[str]] = Field(default=None, max_length=20)
    priority: Optional[int] = Field(default=None, ge=0, le=10)
    notify_on_deals: Optional[bool] = None

    @model_validator(mode="after")
    def _tag_length(self):
        if any(len(tag) > 50 for tag in self.tags or ()):
            raise ValueError("tags must be at most 50 characters")
        return self


class WishlistKey(BaseModel):
    item_type: WishlistItemType
    item_id: str = Field(..., min_length=1)


class BatchCheckInput(BaseModel):
    items: list[WishlistKey] = Field(..., min_length=1, max_length=100)


class WishlistSummary(BaseModel):
    destination_count: int = 0
    proposal_count: int = 0
    itinerary_count: int = 0
    agent_count: int = 0
    total_count: int = 0
    last_added_at: Optional[dt.datetime] = None
