import re
from decimal import Decimal

import pytest

from conftest import ScriptedRandom
from wyzly import payments as payments_module
from wyzly.payments import DECLINED_MESSAGE, MockPaymentProcessor
from wyzly.schemas import PaymentMethod


def test_mock_payment_success_has_mock_transaction_id():
    processor = MockPaymentProcessor(latency=0, rng=ScriptedRandom(0.5))
    result = processor.process_payment(Decimal("10.00"), PaymentMethod.MOCK)

    assert result.success
    assert result.error is None
    assert re.fullmatch(r"mock_txn_\d+_[0-9a-z]{9}", result.transaction_id)


def test_mock_payment_declines_above_success_rate():
    processor = MockPaymentProcessor(success_rate=0.95, latency=0, rng=ScriptedRandom(0.97))
    result = processor.process_payment(Decimal("10.00"), "mock")

    assert not result.success
    assert result.transaction_id is None
    assert result.error == DECLINED_MESSAGE


def test_other_methods_always_succeed():
    processor = MockPaymentProcessor(success_rate=0.0, latency=0, rng=ScriptedRandom(0.99))
    for method in (PaymentMethod.CREDIT_CARD, PaymentMethod.PAYPAL, PaymentMethod.CASH):
        result = processor.process_payment(Decimal("5.00"), method)
        assert result.success
        assert re.fullmatch(rf"{method.value}_txn_\d+", result.transaction_id)


def test_gateway_wait_scales_with_payment_count(monkeypatch):
    slept = []
    monkeypatch.setattr(payments_module.time, "sleep", slept.append)

    MockPaymentProcessor(latency=0.1).wait_for_gateway(3)
    MockPaymentProcessor(latency=0).wait_for_gateway(3)

    assert slept == [pytest.approx(0.3)]
