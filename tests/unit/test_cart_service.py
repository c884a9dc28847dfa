"""
Unit tests for cart snapshot parsing.
"""

import pytest
from storefront.exceptions import BusinessLogicError
from storefront.services.cart_service import (
    ItemKind, cart_subtotal_cents, parse_cart, parse_line_item, serialize_cart
)


class TestParseCart:
    """Tests for parse_cart / parse_line_item."""

    def test_parse_line_item(self):
        line = parse_line_item({'item_id': 42, 'item_kind': 'game', 'unit_price_cents': 2999, 'quantity': 2})

        assert line.item_id == '42'
        assert line.item_kind == ItemKind.GAME
        assert line.line_total_cents == 5998
        assert line.target_key == 'game:42'

    def test_accepts_storefront_field_names(self):
        line = parse_line_item({'id': '7', 'type': 'MERCH', 'price_cents': 2500, 'size': 'XL'})

        assert line.item_kind == ItemKind.MERCH
        assert line.quantity == 1
        assert line.variant == 'XL'

    def test_empty_cart_rejected(self):
        with pytest.raises(BusinessLogicError):
            parse_cart([])

    @pytest.mark.parametrize('raw', [
        {'item_kind': 'game', 'unit_price_cents': 100},
        {'item_id': '1', 'item_kind': 'ticket', 'unit_price_cents': 100},
        {'item_id': '1', 'item_kind': 'game', 'unit_price_cents': -1},
        {'item_id': '1', 'item_kind': 'game', 'unit_price_cents': 100, 'quantity': 0},
        {'item_id': '1', 'item_kind': 'game', 'unit_price_cents': 19.99},
        {'item_id': '1', 'item_kind': 'game', 'unit_price_cents': True},
    ])
    def test_invalid_lines_rejected(self, raw):
        with pytest.raises(BusinessLogicError):
            parse_line_item(raw)

    def test_serialized_cart_parses_back(self, cart):
        assert parse_cart(serialize_cart(cart)) == cart
        assert cart_subtotal_cents(cart) == 6000
