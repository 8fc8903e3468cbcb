"""
Cart ledger: ordered line items keyed by (product, plan).

The same product bought under two plans occupies two lines. Prices are
snapshots taken when the line is added and are never recomputed here.
Persistence is an injected side effect; a failed write is logged and the
in-memory ledger stays authoritative.
"""
import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, NamedTuple, Optional

from pydantic import ValidationError as SchemaError
from pymongo.database import Database

from errors import NotFoundError, ValidationError
from pricing import resolve_price
from schemas import ACCOUNT_ACCESS, STANDARD_PLAN, SUBSCRIPTION_PLANS, CartLine, Product

logger = logging.getLogger(__name__)

_PLAN_ALIASES = {"standard": STANDARD_PLAN}
_KNOWN_PLANS = set(SUBSCRIPTION_PLANS) | {ACCOUNT_ACCESS, STANDARD_PLAN}


class LineKey(NamedTuple):
    """Identity of a cart line. Serialized as "{product_id}-{plan_key}"."""

    product_id: str
    plan_key: str

    def __str__(self) -> str:
        return f"{self.product_id}-{self.plan_key}"

    @classmethod
    def parse(cls, cart_id: str) -> "LineKey":
        # plan keys never contain "-", product ids might
        product_id, sep, plan_key = cart_id.rpartition("-")
        plan_key = _PLAN_ALIASES.get(plan_key, plan_key)
        if not sep or not product_id or plan_key not in _KNOWN_PLANS:
            raise ValidationError(f"Malformed cart item id: {cart_id}")
        return cls(product_id, plan_key)

    @classmethod
    def of(cls, line: CartLine) -> "LineKey":
        return cls(line.product_id, line.plan_type or STANDARD_PLAN)


def line_from_product(product_id: str, product: Product, plan: Optional[str] = None, quantity: int = 1) -> CartLine:
    """Snapshot a product's resolved price for `plan` into a new cart line."""
    resolved = resolve_price(product, plan)
    plan_type = None if resolved.plan_key == STANDARD_PLAN else resolved.plan_key
    return CartLine(
        cart_id=str(LineKey(product_id, resolved.plan_key)),
        product_id=product_id,
        name=product.title,
        image=product.thumbnail,
        category=product.category or "Product",
        price=resolved.unit_price,
        regular_price=resolved.reference_price,
        quantity=max(1, quantity),
        plan_type=plan_type,
        validity=resolved.validity_label,
    )


# ==================== Storage ====================

class MemoryCartStorage:
    """Keeps each cart as a serialized JSON blob, like browser local storage."""

    def __init__(self):
        self._blobs: Dict[str, str] = {}

    def load(self, key: str) -> Optional[List[Dict[str, Any]]]:
        blob = self._blobs.get(key)
        if blob is None:
            return None
        return json.loads(blob)

    def save(self, key: str, items: List[Dict[str, Any]]) -> None:
        self._blobs[key] = json.dumps(items)

    def delete(self, key: str) -> None:
        self._blobs.pop(key, None)


class MongoCartStorage:
    """One document per cart key in the `cart` collection."""

    collection = "cart"

    def __init__(self, database: Database):
        self._db = database

    def load(self, key: str) -> Optional[List[Dict[str, Any]]]:
        doc = self._db[self.collection].find_one({"cart_key": key})
        if not doc:
            return None
        return doc.get("items")

    def save(self, key: str, items: List[Dict[str, Any]]) -> None:
        self._db[self.collection].update_one(
            {"cart_key": key},
            {"$set": {"items": items, "updated_at": datetime.now(timezone.utc)}},
            upsert=True,
        )

    def delete(self, key: str) -> None:
        self._db[self.collection].delete_one({"cart_key": key})


# ==================== Ledger ====================

class CartLedger:
    def __init__(self, storage=None, owner: str = "guest", lines: Optional[List[CartLine]] = None):
        self._storage = storage if storage is not None else MemoryCartStorage()
        self._owner = owner
        self._lines: Dict[LineKey, CartLine] = {}
        self._batch_depth = 0
        self._dirty = False
        for line in lines or []:
            self._merge(line)

    @classmethod
    def load(cls, storage, owner: str) -> "CartLedger":
        """Restore a ledger from storage. A corrupted blob is discarded."""
        try:
            raw = storage.load(owner) or []
            lines = [CartLine.model_validate(item) for item in raw]
        except (SchemaError, TypeError, ValueError):
            logger.warning("Cart %s corrupted, resetting", owner, exc_info=True)
            storage.delete(owner)
            lines = []
        return cls(storage, owner, lines)

    # --- queries ---

    @property
    def owner(self) -> str:
        return self._owner

    @property
    def lines(self) -> List[CartLine]:
        return [line.model_copy() for line in self._lines.values()]

    @property
    def subtotal(self) -> float:
        return round(sum(line.price * line.quantity for line in self._lines.values()), 2)

    @property
    def item_count(self) -> int:
        return sum(line.quantity for line in self._lines.values())

    def is_empty(self) -> bool:
        return not self._lines

    def get(self, cart_id: str) -> Optional[CartLine]:
        line = self._lines.get(LineKey.parse(cart_id))
        return line.model_copy() if line else None

    def __len__(self) -> int:
        return len(self._lines)

    def __iter__(self) -> Iterator[CartLine]:
        return iter(self.lines)

    # --- mutations ---

    def add(self, item: CartLine) -> CartLine:
        merged = self._merge(item)
        self._changed()
        return merged.model_copy()

    def remove(self, cart_id: str) -> bool:
        removed = self._lines.pop(LineKey.parse(cart_id), None)
        if removed is None:
            return False
        self._changed()
        return True

    def set_quantity(self, cart_id: str, quantity: int) -> CartLine:
        key = LineKey.parse(cart_id)
        line = self._lines.get(key)
        if line is None:
            raise NotFoundError(f"Cart item {cart_id} not found")
        self._lines[key] = line.model_copy(update={"quantity": max(1, int(quantity))})
        self._changed()
        return self._lines[key].model_copy()

    def clear(self) -> None:
        self._lines.clear()
        if self._batch_depth:
            self._dirty = True
            return
        try:
            self._storage.delete(self._owner)
        except Exception:
            logger.exception("Failed to clear stored cart %s", self._owner)

    @contextmanager
    def batch(self):
        """Coalesce several mutations into a single storage write."""
        self._batch_depth += 1
        try:
            yield self
        finally:
            self._batch_depth -= 1
            if self._batch_depth == 0 and self._dirty:
                self._persist()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [line.model_dump() for line in self._lines.values()],
            "subtotal": self.subtotal,
            "item_count": self.item_count,
        }

    # --- internals ---

    def _merge(self, item: CartLine) -> CartLine:
        key = LineKey.of(item)
        existing = self._lines.get(key)
        if existing is not None:
            merged = existing.model_copy(update={"quantity": existing.quantity + item.quantity})
        else:
            merged = item.model_copy(update={"cart_id": str(key)})
        self._lines[key] = merged
        return merged

    def _changed(self) -> None:
        if self._batch_depth:
            self._dirty = True
            return
        self._persist()

    def _persist(self) -> None:
        self._dirty = False
        try:
            self._storage.save(self._owner, [line.model_dump() for line in self._lines.values()])
        except Exception:
            logger.exception("Failed to persist cart %s", self._owner)
