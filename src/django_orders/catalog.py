"""Catalog collaborator interface.

The engine only reads prices; catalog management lives elsewhere.
Configure the implementation with ORDERS_CATALOG.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class CatalogPrice:
    """Purchasable price of a catalog item, in minor units."""

    item_id: str
    unit_price: int
    title: str = ""


class Catalog(ABC):
    """Abstract base class for price lookups."""

    @abstractmethod
    def get_purchasable_price(self, item_id: str) -> CatalogPrice:
        """
        Return the current price of a purchasable item.

        Raises:
            NotPurchasableError: If the item is unknown, unpublished or deleted.
        """
        pass
