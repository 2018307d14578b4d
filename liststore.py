"""
Per-device list stores (wishlist, compare, cart).

Each store is an in-memory list of item dicts mirrored to a storage backend
under a fixed key after every mutation. Stores are local to one device: there
is no synchronisation with the server-side cart/wishlist collections.

Mutations return a Notice for the shopper, or None when nothing changed and
nothing needs saying.
"""

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

Item = Dict[str, Any]


@dataclass(frozen=True)
class Notice:
    level: str  # "success" | "error"
    message: str


class MemoryStorage:
    def __init__(self):
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value


class JsonFileStorage:
    """One JSON file per key inside a directory."""

    def __init__(self, directory):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        self._path(key).write_text(value, encoding="utf-8")


class PersistedList:
    storage_key: str = "list"
    capacity: Optional[int] = None
    added_message = "Added"
    removed_message = "Removed"
    cleared_message = "Cleared"
    capacity_message = "List is full"
    duplicate_message: Optional[str] = None

    def __init__(self, storage, key: Optional[str] = None, item_id: Callable[[Item], str] = lambda item: str(item["id"])):
        self.storage = storage
        self.key = key or self.storage_key
        self.item_id = item_id
        self._items: List[Item] = []
        self.load()

    @property
    def items(self) -> List[Item]:
        return list(self._items)

    def __len__(self):
        return len(self._items)

    def load(self):
        raw = self.storage.get(self.key)
        if not raw:
            self._items = []
            return
        try:
            data = json.loads(raw)
        except ValueError:
            data = []
        self._items = data if isinstance(data, list) else []

    def save(self):
        self.storage.set(self.key, json.dumps(self._items))

    def contains(self, item_id: str) -> bool:
        return any(self.item_id(item) == item_id for item in self._items)

    def add(self, item: Item) -> Optional[Notice]:
        if self.capacity is not None and len(self._items) >= self.capacity:
            return Notice("error", self.capacity_message)
        if self.contains(self.item_id(item)):
            return Notice("error", self.duplicate_message) if self.duplicate_message else None
        self._items.append(dict(item))
        self.save()
        return Notice("success", self.added_message)

    def remove(self, item_id: str) -> Notice:
        self._items = [item for item in self._items if self.item_id(item) != item_id]
        self.save()
        return Notice("success", self.removed_message)

    def clear(self) -> Notice:
        self._items = []
        self.save()
        return Notice("success", self.cleared_message)


class WishlistStore(PersistedList):
    storage_key = "wishlist"
    capacity = 100
    added_message = "Added to wishlist!"
    removed_message = "Removed from wishlist"
    cleared_message = "Wishlist cleared"
    capacity_message = "Wishlist cannot exceed 100 items"
    duplicate_message = "Already in wishlist"

    def add(self, item: Item) -> Optional[Notice]:
        # a duplicate is reported as such even when the list is full
        if self.contains(self.item_id(item)):
            return Notice("error", self.duplicate_message)
        return super().add(item)


class CompareStore(PersistedList):
    storage_key = "compare"
    capacity = 4
    added_message = "Added to compare!"
    removed_message = "Removed from compare"
    cleared_message = "Comparison cleared"
    capacity_message = "You can compare up to 4 products only"


class CartStore(PersistedList):
    """Adding a product already in the cart bumps its quantity instead."""

    storage_key = "cart"
    added_message = "Added to cart!"
    removed_message = "Removed from cart"
    cleared_message = "Cart cleared"

    def add(self, item: Item, quantity: int = 1) -> Optional[Notice]:
        if quantity < 1:
            return Notice("error", "Quantity must be at least 1")
        item_id = self.item_id(item)
        for existing in self._items:
            if self.item_id(existing) == item_id:
                existing["quantity"] = existing.get("quantity", 1) + quantity
                self.save()
                return Notice("success", "Cart updated")
        self._items.append({**item, "quantity": quantity})
        self.save()
        return Notice("success", self.added_message)

    def update_quantity(self, item_id: str, quantity: int) -> Optional[Notice]:
        if quantity < 1:
            return self.remove(item_id)
        for existing in self._items:
            if self.item_id(existing) == item_id:
                existing["quantity"] = quantity
                self.save()
                return None
        return Notice("error", "Item not found in cart")

    @property
    def subtotal(self) -> float:
        return round(sum(float(i.get("price", 0)) * int(i.get("quantity", 1)) for i in self._items), 2)
