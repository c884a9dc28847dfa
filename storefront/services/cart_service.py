"""Cart snapshot - the immutable priced line items presented at checkout."""
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple
import enum

from storefront.exceptions import BusinessLogicError


class ItemKind(str, enum.Enum):
    """Catalog item kinds a promo code can target."""
    GAME = 'game'
    MERCH = 'merch'


@dataclass(frozen=True)
class CartLineItem:
    """One priced line of the cart snapshot. Prices are trusted catalog prices in cents."""
    item_id: str
    item_kind: ItemKind
    unit_price_cents: int
    quantity: int
    variant: Optional[str] = None

    @property
    def line_total_cents(self) -> int:
        return self.unit_price_cents * self.quantity

    @property
    def target_key(self) -> str:
        """Key used by item-level promo targeting, e.g. 'game:42'."""
        return f"{self.item_kind.value}:{self.item_id}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'item_id': self.item_id,
            'item_kind': self.item_kind.value,
            'unit_price_cents': self.unit_price_cents,
            'quantity': self.quantity,
            'variant': self.variant,
        }


def _as_int(value: Any, field: str) -> int:
    # bool is an int subclass; "true" is not a price
    if isinstance(value, bool):
        raise BusinessLogicError(f'Invalid {field}')
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip('-').isdigit():
        return int(value.strip())
    raise BusinessLogicError(f'Invalid {field}: must be an integer')


def parse_line_item(raw: Dict[str, Any]) -> CartLineItem:
    """Build a CartLineItem from its JSON form, enforcing the snapshot invariants."""
    if not isinstance(raw, dict):
        raise BusinessLogicError('Each cart item must be an object')

    item_id = raw.get('item_id', raw.get('id'))
    if item_id is None or str(item_id).strip() == '':
        raise BusinessLogicError('Cart item is missing item_id')

    try:
        kind = ItemKind(str(raw.get('item_kind', raw.get('type', ''))).lower())
    except ValueError:
        raise BusinessLogicError(f'Unknown item kind for item {item_id}')

    unit_price = _as_int(raw.get('unit_price_cents', raw.get('price_cents')), 'unit_price_cents')
    if unit_price < 0:
        raise BusinessLogicError('unit_price_cents cannot be negative')

    quantity = _as_int(raw.get('quantity', 1), 'quantity')
    if quantity < 1:
        raise BusinessLogicError('quantity must be at least 1')

    variant = raw.get('variant') or raw.get('size')
    return CartLineItem(
        item_id=str(item_id),
        item_kind=kind,
        unit_price_cents=unit_price,
        quantity=quantity,
        variant=str(variant) if variant else None,
    )


def parse_cart(raw_items: Iterable[Dict[str, Any]]) -> Tuple[CartLineItem, ...]:
    """Parse a JSON cart. An empty cart is rejected."""
    if not raw_items:
        raise BusinessLogicError('Cart is empty')
    return tuple(parse_line_item(raw) for raw in raw_items)


def serialize_cart(cart: Iterable[CartLineItem]) -> List[Dict[str, Any]]:
    return [line.to_dict() for line in cart]


def cart_subtotal_cents(cart: Iterable[CartLineItem]) -> int:
    return sum(line.line_total_cents for line in cart)
