import pytest
from datetime import timedelta

from storefront import create_app
from storefront.database import Base, create_all, get_session
from storefront.decorators.rate_limit import limiter
from storefront.models import PromoCode, DiscountType
from storefront.services.cart_service import CartLineItem, ItemKind
from storefront.services.checkout_service import CheckoutService, CheckoutSettings
from storefront.services.payment_gateway import SimulatedPaymentGateway, IntentStatus
from storefront.utils.clock import utcnow


@pytest.fixture(scope='session')
def app():
    """Create application instance for testing."""
    app = create_app('config.TestConfig')
    with app.app_context():
        create_all()
    return app


@pytest.fixture(autouse=True)
def app_gateway(app):
    """Fresh simulated gateway per test; order ids restart once tables are emptied."""
    gateway = SimulatedPaymentGateway(default_status=IntentStatus.PENDING)
    app.extensions['payment_gateway'] = gateway
    return gateway


@pytest.fixture(autouse=True)
def rate_limits(app):
    """Every test starts with empty rate-limit buckets."""
    with app.app_context():
        limiter.reset()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def session(app):
    """Database session; every table is emptied after the test."""
    session = get_session()
    yield session
    session.rollback()
    for table in reversed(Base.metadata.sorted_tables):
        session.execute(table.delete())
    session.commit()
    session.remove()


@pytest.fixture
def now():
    return utcnow().replace(microsecond=0)


@pytest.fixture
def make_promo(session, now):
    """Factory: persisted promo code, active since yesterday, unlimited uses."""
    def _make(code='SAVE20', discount_type=DiscountType.PERCENTAGE, discount_value=20, **overrides):
        fields = {
            'code': code,
            'discount_type': discount_type,
            'discount_value': discount_value,
            'max_uses_per_user': 1,
            'current_uses': 0,
            'applies_to_games': True,
            'applies_to_merch': True,
            'new_customers_only': False,
            'starts_at': now - timedelta(days=1),
            'is_active': True,
        }
        fields.update(overrides)
        promo = PromoCode(**fields)
        session.add(promo)
        session.commit()
        return promo
    return _make


@pytest.fixture
def cart():
    """$60.00 cart: two eligible games."""
    return (
        CartLineItem(item_id='42', item_kind=ItemKind.GAME, unit_price_cents=3500, quantity=1),
        CartLineItem(item_id='7', item_kind=ItemKind.GAME, unit_price_cents=2500, quantity=1),
    )


@pytest.fixture
def gateway():
    return SimulatedPaymentGateway(default_status=IntentStatus.PENDING)


@pytest.fixture
def checkout_service(session, gateway):
    settings = CheckoutSettings(gateway_backoff_seconds=0)
    return CheckoutService(session, gateway, settings)


@pytest.fixture
def ready_checkout(checkout_service, cart):
    """Factory: checkout in payment_selection with address and payment method chosen."""
    def _make(customer_key='user:1', items=None):
        checkout = checkout_service.start_checkout(items or cart, customer_key)
        checkout_service.select_shipping(checkout.id, 'addr_1')
        checkout_service.select_payment_method(checkout.id, 'pm_card')
        return checkout
    return _make
