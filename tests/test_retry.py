"""Tests for bounded retry of idempotent collaborator calls."""

import asyncio

import pytest

from storefront.common.errors import PaymentGatewayUnavailableError
from storefront.common.retry import retry_async


class Flaky:
    def __init__(self, failures, error_cls=PaymentGatewayUnavailableError):
        self.failures = failures
        self.error_cls = error_cls
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error_cls("gateway timeout")
        return "ok"


def _run(call, attempts=3, retry_on=(PaymentGatewayUnavailableError,)):
    return asyncio.run(
        retry_async(call, attempts=attempts, base_delay=0, retry_on=retry_on, dependency="payment_gateway")
    )


def test_recovers_after_transient_failure():
    call = Flaky(failures=2)

    assert _run(call) == "ok"
    assert call.calls == 3


def test_reraises_after_last_attempt():
    call = Flaky(failures=5)

    with pytest.raises(PaymentGatewayUnavailableError):
        _run(call)
    assert call.calls == 3


def test_other_errors_are_not_retried():
    """Only the listed exception types are worth another attempt."""

    call = Flaky(failures=1, error_cls=KeyError)

    with pytest.raises(KeyError):
        _run(call)
    assert call.calls == 1


def test_single_attempt_floor():
    call = Flaky(failures=0)

    assert _run(call, attempts=0) == "ok"
    assert call.calls == 1
