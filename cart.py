"""
Client-local cart.

The cart never lives on the server until checkout. It is kept as JSON text in
a key/value store shaped like browser local storage, under a key derived from
the current identity (`coop_cart:<user id>` or `coop_cart:guest`). Several
`Cart` objects may share one storage, the way several tabs share one browser
profile: a write by one notifies the subscribers of the others, and the last
writer wins.
"""

import json
import logging
from typing import Callable, Dict, List, Optional

from pydantic import ValidationError

from schemas import CartItem

logger = logging.getLogger(__name__)

CART_KEY = "coop_cart"
GUEST = "guest"

Listener = Callable[[], None]
StorageListener = Callable[[str, object], None]


def cart_key(user_id: Optional[str]) -> str:
    return f"{CART_KEY}:{user_id or GUEST}"


def cart_item_id(product_id: str, variant_id: str, sale_date_key: Optional[str]) -> str:
    return f"{product_id}_{variant_id}_{sale_date_key}"


def _same_line(a: CartItem, b: CartItem) -> bool:
    return (a.product_id, a.variant_id, a.sale_date_key) == (b.product_id, b.variant_id, b.sale_date_key)


def merge_items(base: List[CartItem], incoming: List[CartItem]) -> List[CartItem]:
    """Add `incoming` lines to `base`, summing quantities of matching lines."""
    items = [item.model_copy() for item in base]
    for item in incoming:
        for index, existing in enumerate(items):
            if _same_line(existing, item):
                items[index] = existing.model_copy(update={"quantity": existing.quantity + item.quantity})
                break
        else:
            items.append(item.model_copy())
    return items


class LocalStorage:
    """In-process string key/value store with change notifications."""

    def __init__(self, data: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(data or {})
        self._listeners: List[StorageListener] = []

    def get_item(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set_item(self, key: str, value: str, origin: object = None):
        self._data[key] = value
        self._notify(key, origin)

    def remove_item(self, key: str, origin: object = None):
        if self._data.pop(key, None) is not None:
            self._notify(key, origin)

    def keys(self) -> List[str]:
        return list(self._data)

    def subscribe(self, listener: StorageListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, key: str, origin: object):
        for listener in list(self._listeners):
            listener(key, origin)


class Cart:
    def __init__(self, storage: LocalStorage, user_id: Optional[str] = None):
        self.storage = storage
        self.key = cart_key(user_id)
        self._listeners: List[Listener] = []
        self._unsubscribe_storage = storage.subscribe(self._on_storage_change)

    @property
    def is_guest(self) -> bool:
        return self.key == cart_key(None)

    def _read(self, key: Optional[str] = None) -> List[CartItem]:
        raw = self.storage.get_item(key or self.key)
        if not raw:
            return []
        try:
            parsed = json.loads(raw)
            if not isinstance(parsed, list):
                return []
            return [CartItem.model_validate(entry) for entry in parsed]
        except (ValueError, ValidationError):
            logger.warning("Discarding unreadable cart stored under %s", key or self.key)
            return []

    @staticmethod
    def _dump(items: List[CartItem]) -> str:
        return json.dumps([item.model_dump(mode="json", by_alias=True) for item in items])

    def _write(self, items: List[CartItem]):
        self.storage.set_item(self.key, self._dump(items), origin=self)
        self._emit()

    def _emit(self):
        for listener in list(self._listeners):
            listener()

    def _on_storage_change(self, key: str, origin: object):
        # Own writes already notified through _emit
        if origin is not self and key == self.key:
            self._emit()

    def items(self) -> List[CartItem]:
        return self._read()

    def add(self, item: CartItem):
        if item.id is None:
            item = item.model_copy(update={"id": cart_item_id(item.product_id, item.variant_id, item.sale_date_key)})
        self._write(merge_items(self._read(), [item]))

    def update(self, item_id: str, quantity: int):
        """Set a line quantity; never below 1, removal goes through `remove`."""
        items = [
            item.model_copy(update={"quantity": max(1, quantity)}) if item.id == item_id else item
            for item in self._read()
        ]
        self._write(items)

    def remove(self, item_id: str):
        self._write([item for item in self._read() if item.id != item_id])

    def clear(self):
        self._write([])

    def total_amount(self) -> float:
        return round(sum(item.unit_price * item.quantity for item in self._read()), 2)

    def item_count(self) -> int:
        return sum(item.quantity for item in self._read())

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def rebind(self, user_id: Optional[str]):
        """Switch the cart to another identity.

        Leaving the guest identity moves the guest lines into the target cart
        (quantities of matching lines are summed) and drops the guest key.
        Leaving a signed-in identity keeps that cart under its own key.
        """
        next_key = cart_key(user_id)
        if next_key == self.key:
            return
        if self.is_guest:
            guest_items = self._read()
            if guest_items:
                merged = merge_items(self._read(next_key), guest_items)
                self.storage.set_item(next_key, self._dump(merged), origin=self)
            self.storage.remove_item(self.key, origin=self)
        self.key = next_key
        self._emit()

    def close(self):
        self._unsubscribe_storage()
        self._listeners.clear()
