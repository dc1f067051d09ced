"""
Mock payment step used while placing orders.

This stands in for a payment gateway: there is no idempotency key, retry or
webhook confirmation. ``mock`` payments fail at random (5% by default); every
other method succeeds.
"""

import random
import string
import time
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from . import config
from .schemas import PaymentMethod

logger = logging.getLogger(__name__)

DECLINED_MESSAGE = "Payment failed - insufficient funds or card declined"
_BASE36 = string.digits + string.ascii_lowercase


@dataclass
class PaymentResult:
    success: bool
    transaction_id: Optional[str] = None
    error: Optional[str] = None


class MockPaymentProcessor:
    def __init__(self, success_rate: float = None, latency: float = None, rng: random.Random = None):
        self.success_rate = config.MOCK_PAYMENT_SUCCESS_RATE if success_rate is None else success_rate
        self.latency = config.MOCK_PAYMENT_LATENCY if latency is None else latency
        self.rng = rng or random.Random()

    def wait_for_gateway(self, payments: int = 1):
        """Block for the simulated gateway round trip of ``payments`` charges.

        Callers do this before opening a transaction so no database lock is
        held while sleeping.
        """
        if self.latency > 0 and payments > 0:
            time.sleep(self.latency * payments)

    def process_payment(self, amount: Decimal, method: PaymentMethod) -> PaymentResult:
        """Decide the outcome of charging ``amount`` with the given method"""
        millis = int(time.time() * 1000)
        method = PaymentMethod(method)

        if method is PaymentMethod.MOCK:
            if self.rng.random() < self.success_rate:
                suffix = "".join(self.rng.choice(_BASE36) for _ in range(9))
                return PaymentResult(success=True, transaction_id=f"mock_txn_{millis}_{suffix}")
            logger.warning("Mock payment of %s declined", amount)
            return PaymentResult(success=False, error=DECLINED_MESSAGE)

        return PaymentResult(success=True, transaction_id=f"{method.value}_txn_{millis}")
