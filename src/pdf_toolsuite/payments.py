"""
Payment-to-entitlement bridge.

Turns an already verified PayPal capture into a premium window plus a
backup activation code the buyer can redeem from another session.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel

from .errors import InvalidAmount, PaymentNotCompleted
from .stores import (
    PREMIUM_HOURS,
    PendingPayment,
    Session,
    Stores,
    generate_order_id,
    utcnow,
)

logger = logging.getLogger(__name__)

PREMIUM_PRICE = "2.00"


class CaptureReceipt(BaseModel):
    order_id: str
    premium_until: datetime
    code: str


def extract_captured_amount(payment_details: Optional[Dict[str, Any]]) -> Optional[str]:
    """Read ``purchase_units[0].payments.captures[0].amount.value`` from a capture payload"""
    try:
        return payment_details["purchase_units"][0]["payments"]["captures"][0]["amount"]["value"]
    except (KeyError, IndexError, TypeError):
        return None


class PaymentBridge:
    """Creates orders and converts completed captures into premium grants"""

    def __init__(self, stores: Stores, price: str = PREMIUM_PRICE,
                 premium_hours: float = PREMIUM_HOURS):
        self.stores = stores
        self.price = price
        self.premium_hours = premium_hours

    def create_order(self, user_id: str) -> PendingPayment:
        payment = PendingPayment(
            order_id=generate_order_id(),
            user_id=user_id,
            amount=self.price,
        )
        self.stores.payments.add(payment)
        logger.info(f"PayPal order created: {payment.order_id} for user: {user_id}")
        return payment

    def capture_payment(self, order_id: str, payer_id: Optional[str],
                        payment_status: Optional[str], captured_amount: Optional[str],
                        session: Session, now: Optional[datetime] = None) -> CaptureReceipt:
        """
        Grant premium for a completed capture.

        The amount is compared as an exact string: ``"2.00"`` passes while
        ``"2"`` or ``"2.00 "`` do not.

        Raises:
            PaymentNotCompleted: status is anything but ``COMPLETED``
            InvalidAmount: captured amount differs from the price
        """
        if payment_status != "COMPLETED":
            raise PaymentNotCompleted(payment_status)
        if captured_amount != self.price:
            raise InvalidAmount(captured_amount, self.price)

        now = now or utcnow()
        with self.stores.lock:
            entry = self.stores.codes.generate(origin_user_id=session.user_id)
            entry.used = True
            entry.activated_by = session.user_id
            entry.activated_at = now
            entry.payment_order_id = order_id
            entry.payer_id = payer_id

            premium_until = self.stores.sessions.grant_premium(session, self.premium_hours, now=now)

            pending = self.stores.payments.get(order_id)
            if pending is not None:
                pending.status = "completed"
            else:
                logger.warning(f"Captured payment for unknown order {order_id}")

        logger.info(f"Premium access granted to {session.user_id} until {premium_until.isoformat()}")
        return CaptureReceipt(order_id=order_id, premium_until=premium_until, code=entry.code)
