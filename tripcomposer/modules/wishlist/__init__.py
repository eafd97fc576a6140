"""Wishlist: saved items per traveler."""

from tripcomposer.modules.wishlist.models import (
    AddWishlistItemInput,
    BatchCheckInput,
    UpdateWishlistItemInput,
    WishlistItem,
    WishlistItemType,
    WishlistSort,
    WishlistSummary,
)
from tripcomposer.modules.wishlist.service import WishlistService

__all__ = [
    "AddWishlistItemInput",
    "BatchCheckInput",
    "UpdateWishlistItemInput",
    "WishlistItem",
    "WishlistItemType",
    "WishlistService",
    "WishlistSort",
    "WishlistSummary",
]
