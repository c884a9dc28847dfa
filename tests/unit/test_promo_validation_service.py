"""
Unit tests for promo code validation.
"""

import pytest
from datetime import timedelta
from storefront.models import DiscountType, DiscountApplication, Order, OrderStatus
from storefront.services.cart_service import CartLineItem, ItemKind
from storefront.services.promo_validation_service import (
    CustomerPromoHistory, PromoResult, evaluate_promo_code, validate_promo_code
)


class TestValidatePromoCode:
    """Tests for validate_promo_code against the database."""

    def test_accepts_valid_code(self, session, make_promo, cart, now):
        promo = make_promo()

        decision = validate_promo_code(session, 'SAVE20', cart, 'user:1', now)

        assert decision.accepted
        assert decision.promo_code_id == promo.id
        assert decision.discount_cents == 1200
        assert decision.eligible_item_count == 2
        assert decision.message == '20% off applied!'

    def test_code_lookup_is_normalized(self, session, make_promo, cart, now):
        make_promo()

        decision = validate_promo_code(session, '  save20 ', cart, 'user:1', now)

        assert decision.accepted
        assert decision.code == 'SAVE20'

    def test_unknown_code(self, session, cart, now):
        decision = validate_promo_code(session, 'NOPE', cart, 'user:1', now)

        assert decision.result == PromoResult.CODE_NOT_FOUND
        assert decision.discount_cents == 0

    def test_inactive_code_reported_as_not_found(self, session, make_promo, cart, now):
        make_promo(is_active=False)

        decision = validate_promo_code(session, 'SAVE20', cart, 'user:1', now)

        assert decision.result == PromoResult.CODE_NOT_FOUND

    def test_expired_code_regardless_of_cart(self, session, make_promo, now):
        make_promo(expires_at=now - timedelta(days=1))
        merch_only = (CartLineItem('9', ItemKind.MERCH, 100, 1),)

        decision = validate_promo_code(session, 'SAVE20', merch_only, 'user:1', now)

        assert decision.result == PromoResult.CODE_EXPIRED
        assert decision.message == 'This promo code has expired'

    def test_not_yet_active(self, session, make_promo, cart, now):
        make_promo(starts_at=now + timedelta(hours=1))

        decision = validate_promo_code(session, 'SAVE20', cart, 'user:1', now)

        assert decision.result == PromoResult.CODE_NOT_YET_ACTIVE

    def test_not_applicable_to_cart(self, session, make_promo, cart, now):
        make_promo(applies_to_games=False)

        decision = validate_promo_code(session, 'SAVE20', cart, 'user:1', now)

        assert decision.result == PromoResult.NOT_APPLICABLE_TO_CART

    def test_minimum_checked_against_eligible_subtotal(self, session, make_promo, now):
        make_promo(applies_to_merch=False, min_order_cents=2500)
        cart = (
            CartLineItem('42', ItemKind.GAME, 2000, 1),
            CartLineItem('7', ItemKind.MERCH, 4000, 1),
        )

        decision = validate_promo_code(session, 'SAVE20', cart, 'user:1', now)

        assert decision.result == PromoResult.BELOW_MINIMUM_ORDER
        assert decision.message == 'Minimum order of $25.00 required for this promo code'

    def test_new_customers_only(self, session, make_promo, cart, now):
        make_promo(new_customers_only=True)
        session.add(Order(customer_key='user:1', status=OrderStatus.PAID, total_cents=1000))
        session.commit()

        returning = validate_promo_code(session, 'SAVE20', cart, 'user:1', now)
        newcomer = validate_promo_code(session, 'SAVE20', cart, 'user:2', now)

        assert returning.result == PromoResult.NEW_CUSTOMERS_ONLY_RESTRICTION
        assert newcomer.accepted

    def test_unpaid_orders_do_not_make_a_returning_customer(self, session, make_promo, cart, now):
        make_promo(new_customers_only=True)
        session.add(Order(customer_key='user:1', status=OrderStatus.PAYMENT_FAILED, total_cents=1000))
        session.commit()

        assert validate_promo_code(session, 'SAVE20', cart, 'user:1', now).accepted

    def test_global_usage_limit(self, session, make_promo, cart, now):
        make_promo(max_uses=5, current_uses=5)

        decision = validate_promo_code(session, 'SAVE20', cart, 'user:1', now)

        assert decision.result == PromoResult.USAGE_LIMIT_REACHED

    def test_per_user_limit(self, session, make_promo, cart, now):
        promo = make_promo()
        order = Order(customer_key='user:1', status=OrderStatus.PAID, total_cents=4800)
        session.add(order)
        session.flush()
        session.add(DiscountApplication(
            promo_code_id=promo.id, order_id=order.id, customer_key='user:1',
            discount_cents=1200, applied_at=now
        ))
        session.commit()

        decision = validate_promo_code(session, 'SAVE20', cart, 'user:1', now)

        assert decision.result == PromoResult.PER_USER_LIMIT_REACHED

    def test_restricted_code_hidden_from_other_customers(self, session, make_promo, cart, now):
        make_promo(specific_customer_keys=['user:9'])

        assert validate_promo_code(session, 'SAVE20', cart, 'user:1', now).result == PromoResult.CODE_NOT_FOUND
        assert validate_promo_code(session, 'SAVE20', cart, 'user:9', now).accepted

    def test_fixed_code_message(self, session, make_promo, cart, now):
        make_promo(code='FIVE', discount_type=DiscountType.FIXED, discount_value=500)

        decision = validate_promo_code(session, 'FIVE', cart, 'user:1', now)

        assert decision.message == '$5.00 off applied!'
        assert decision.to_dict()['discount']['formatted'] == '$5.00'


class TestEvaluationOrder:
    """The first failing rule wins."""

    def test_expiry_checked_before_applicability(self, make_promo, now):
        promo = make_promo(expires_at=now - timedelta(days=1), applies_to_games=False)
        cart = (CartLineItem('1', ItemKind.GAME, 100, 1),)

        decision = evaluate_promo_code(promo, cart, 'user:1', now)

        assert decision.result == PromoResult.CODE_EXPIRED

    def test_minimum_checked_before_usage(self, make_promo, now):
        promo = make_promo(min_order_cents=10000, max_uses=1, current_uses=1)
        cart = (CartLineItem('1', ItemKind.GAME, 100, 1),)

        decision = evaluate_promo_code(promo, cart, 'user:1', now)

        assert decision.result == PromoResult.BELOW_MINIMUM_ORDER

    def test_new_customer_checked_before_per_user(self, make_promo, cart, now):
        promo = make_promo(new_customers_only=True)
        history = CustomerPromoHistory(paid_order_count=1, code_application_count=1)

        decision = evaluate_promo_code(promo, cart, 'user:1', now, history)

        assert decision.result == PromoResult.NEW_CUSTOMERS_ONLY_RESTRICTION

    @pytest.mark.parametrize('offset, accepted', [
        (timedelta(seconds=-1), True),
        (timedelta(seconds=0), False),
    ])
    def test_expires_at_is_exclusive(self, make_promo, cart, now, offset, accepted):
        promo = make_promo(expires_at=now)

        decision = evaluate_promo_code(promo, cart, 'user:1', now + offset)

        assert decision.accepted is accepted
