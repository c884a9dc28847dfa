"""
Discount ledger - the only writer of PromoCode.current_uses.

Two-phase redemption across the payment round trip:

    try_reserve  -> conditional increment, one reservation row
    commit       -> reservation committed, DiscountApplication written (paid order)
    release      -> reservation released, counter decremented (failed/abandoned)

The increment is a single `UPDATE ... WHERE current_uses < max_uses` whose
affected-row count decides the outcome; there is no read-then-write pair.
Methods flush but never commit: the caller owns the transaction.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, or_, update

from storefront.exceptions import InvariantViolationError, ReservationLapsedError
from storefront.metrics import promo_reservations_total
from storefront.models import (
    PromoCode, PromoReservation, ReservationStatus, DiscountApplication
)
from storefront.services.promo_validation_service import PromoResult
from storefront.utils.clock import utcnow

logger = logging.getLogger(__name__)

DEFAULT_RESERVATION_TTL_SECONDS = 15 * 60


@dataclass(frozen=True)
class ReservationResult:
    """Outcome of try_reserve. `token` is set only when a slot was claimed."""
    result: PromoResult
    token: Optional[str] = None
    expires_at: Optional[datetime] = None

    @property
    def reserved(self) -> bool:
        return self.token is not None


class DiscountLedger:
    """Promo code usage ledger backed by the SQL session."""

    def __init__(self, session, ttl_seconds: int = DEFAULT_RESERVATION_TTL_SECONDS):
        self.session = session
        self.ttl = timedelta(seconds=ttl_seconds)

    # -----------------------------------------------------
    # Counter primitives
    # -----------------------------------------------------

    def _claim_slot(self, promo_code_id: int) -> bool:
        """Atomically take one use if one is left. Holds the promo row lock until commit."""
        result = self.session.execute(
            update(PromoCode)
            .where(
                PromoCode.id == promo_code_id,
                or_(PromoCode.max_uses.is_(None), PromoCode.current_uses < PromoCode.max_uses)
            )
            .values(current_uses=PromoCode.current_uses + 1)
            .execution_options(synchronize_session=False)
        )
        self._expire_counter(promo_code_id)
        return result.rowcount == 1

    def _return_slots(self, promo_code_id: int, count: int = 1):
        result = self.session.execute(
            update(PromoCode)
            .where(PromoCode.id == promo_code_id, PromoCode.current_uses >= count)
            .values(current_uses=PromoCode.current_uses - count)
            .execution_options(synchronize_session=False)
        )
        self._expire_counter(promo_code_id)
        if result.rowcount != 1:
            raise InvariantViolationError(
                f'Promo code {promo_code_id}: cannot return {count} use(s), counter would underflow'
            )

    def _expire_counter(self, promo_code_id: int):
        """Drop a cached current_uses so the next read hits the database."""
        key = self.session.identity_key(PromoCode, promo_code_id)
        promo = self.session.identity_map.get(key)
        if promo is not None:
            self.session.expire(promo, ['current_uses'])

    # -----------------------------------------------------
    # Public API
    # -----------------------------------------------------

    def try_reserve(
        self,
        promo_code_id: int,
        customer_key: str,
        order_id: Optional[int] = None,
        now: Optional[datetime] = None
    ) -> ReservationResult:
        """
        Reserve one use of a promo code for a checkout.

        Fails with USAGE_LIMIT_REACHED when the code is exhausted (even if
        validation passed a moment earlier) and with PER_USER_LIMIT_REACHED
        when the customer's committed plus in-flight uses hit the cap.
        """
        now = now or utcnow()

        self._sweep_code(promo_code_id, now)

        if not self._claim_slot(promo_code_id):
            promo_reservations_total.labels(result=PromoResult.USAGE_LIMIT_REACHED.value).inc()
            logger.info(f"[LEDGER] Promo {promo_code_id} exhausted; reservation refused for {customer_key}")
            return ReservationResult(result=PromoResult.USAGE_LIMIT_REACHED)

        # The claim above locks the promo row, so this count cannot race
        # with another reservation for the same code.
        if self._customer_usage(promo_code_id, customer_key) >= self._per_user_cap(promo_code_id):
            self._return_slots(promo_code_id)
            promo_reservations_total.labels(result=PromoResult.PER_USER_LIMIT_REACHED.value).inc()
            logger.info(f"[LEDGER] Promo {promo_code_id} per-user cap reached for {customer_key}")
            return ReservationResult(result=PromoResult.PER_USER_LIMIT_REACHED)

        reservation = PromoReservation(
            token=uuid.uuid4().hex,
            promo_code_id=promo_code_id,
            customer_key=customer_key,
            order_id=order_id,
            status=ReservationStatus.ACTIVE,
            created_at=now,
            expires_at=now + self.ttl
        )
        self.session.add(reservation)
        self.session.flush()

        promo_reservations_total.labels(result=PromoResult.ACCEPTED.value).inc()
        logger.info(f"[LEDGER] Reserved promo {promo_code_id} for {customer_key} (token {reservation.token})")
        return ReservationResult(
            result=PromoResult.ACCEPTED,
            token=reservation.token,
            expires_at=reservation.expires_at
        )

    def commit(
        self,
        token: str,
        order_id: int,
        discount_cents: int,
        now: Optional[datetime] = None
    ) -> DiscountApplication:
        """
        Make a reservation permanent for a paid order.

        Idempotent on order_id: a replayed confirmation returns the existing
        application without touching the counter.
        """
        now = now or utcnow()

        existing = self._application_for_order(order_id)
        if existing is not None:
            logger.info(f"[LEDGER] Order {order_id} already committed; skipping")
            return existing

        reservation = self.session.query(PromoReservation).filter(
            PromoReservation.token == token
        ).first()
        if reservation is None:
            raise InvariantViolationError(f'Reservation {token} not found for order {order_id}')

        committed = self.session.execute(
            update(PromoReservation)
            .where(PromoReservation.token == token, PromoReservation.status == ReservationStatus.ACTIVE)
            .values(status=ReservationStatus.COMMITTED, order_id=order_id, closed_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount == 1

        if not committed:
            self.session.refresh(reservation)
            if reservation.status == ReservationStatus.COMMITTED:
                existing = self._application_for_order(order_id)
                if existing is not None and reservation.order_id == order_id:
                    return existing
                raise InvariantViolationError(
                    f'Reservation {token} already committed for order {reservation.order_id}'
                )
            # Released or expired before the payment confirmation arrived:
            # the customer paid the discounted price, so take a fresh slot.
            if not self._claim_slot(reservation.promo_code_id):
                raise ReservationLapsedError(
                    f'Reservation {token} lapsed ({reservation.status.value}) and promo '
                    f'{reservation.promo_code_id} has no uses left for order {order_id}'
                )
            if self._customer_usage(reservation.promo_code_id, reservation.customer_key) >= \
                    self._per_user_cap(reservation.promo_code_id):
                self._return_slots(reservation.promo_code_id)
                raise ReservationLapsedError(
                    f'Reservation {token} lapsed ({reservation.status.value}) and '
                    f'{reservation.customer_key} already used promo {reservation.promo_code_id} '
                    f'up to its per-customer limit (order {order_id})'
                )
            logger.warning(f"[LEDGER] Reservation {token} had lapsed; re-claimed a slot for order {order_id}")

        self.session.expire(reservation)
        reservation.status = ReservationStatus.COMMITTED
        reservation.order_id = order_id
        reservation.closed_at = now

        application = DiscountApplication(
            promo_code_id=reservation.promo_code_id,
            order_id=order_id,
            customer_key=reservation.customer_key,
            discount_cents=discount_cents,
            applied_at=now
        )
        self.session.add(application)
        self.session.flush()

        logger.info(f"[LEDGER] Committed promo {reservation.promo_code_id} for order {order_id}")
        return application

    def release(self, token: str, now: Optional[datetime] = None) -> bool:
        """
        Give a reserved use back. Returns False if the reservation was not active
        (already released, expired or committed), so repeated calls are harmless.
        """
        now = now or utcnow()
        reservation = self.session.query(PromoReservation).filter(
            PromoReservation.token == token
        ).first()
        if reservation is None:
            return False

        released = self.session.execute(
            update(PromoReservation)
            .where(PromoReservation.token == token, PromoReservation.status == ReservationStatus.ACTIVE)
            .values(status=ReservationStatus.RELEASED, closed_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount == 1
        self.session.expire(reservation)

        if not released:
            return False

        self._return_slots(reservation.promo_code_id)
        logger.info(f"[LEDGER] Released promo {reservation.promo_code_id} (token {token})")
        return True

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """Release every active reservation past its expiry. Returns how many were released."""
        now = now or utcnow()
        promo_ids = [
            row[0] for row in self.session.query(PromoReservation.promo_code_id).filter(
                PromoReservation.status == ReservationStatus.ACTIVE,
                PromoReservation.expires_at < now
            ).distinct().all()
        ]
        total = 0
        for promo_code_id in promo_ids:
            total += self._sweep_code(promo_code_id, now)
        if total:
            logger.info(f"[LEDGER] Swept {total} expired reservation(s)")
        return total

    # -----------------------------------------------------
    # Helpers
    # -----------------------------------------------------

    def _sweep_code(self, promo_code_id: int, now: datetime) -> int:
        """Expire stale reservations of one code and return their uses."""
        expired = self.session.execute(
            update(PromoReservation)
            .where(
                PromoReservation.promo_code_id == promo_code_id,
                PromoReservation.status == ReservationStatus.ACTIVE,
                PromoReservation.expires_at < now
            )
            .values(status=ReservationStatus.EXPIRED, closed_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount
        if expired:
            self._return_slots(promo_code_id, expired)
            logger.info(f"[LEDGER] Expired {expired} stale reservation(s) of promo {promo_code_id}")
        return expired

    def _per_user_cap(self, promo_code_id: int) -> int:
        return self.session.query(PromoCode.max_uses_per_user).filter(
            PromoCode.id == promo_code_id
        ).scalar() or 1

    def _customer_usage(self, promo_code_id: int, customer_key: str) -> int:
        committed = self.session.query(func.count(DiscountApplication.id)).filter(
            DiscountApplication.promo_code_id == promo_code_id,
            DiscountApplication.customer_key == customer_key
        ).scalar() or 0
        in_flight = self.session.query(func.count(PromoReservation.id)).filter(
            PromoReservation.promo_code_id == promo_code_id,
            PromoReservation.customer_key == customer_key,
            PromoReservation.status == ReservationStatus.ACTIVE
        ).scalar() or 0
        return committed + in_flight

    def _application_for_order(self, order_id: int) -> Optional[DiscountApplication]:
        return self.session.query(DiscountApplication).filter(
            DiscountApplication.order_id == order_id
        ).first()
