"""Retry and polling helpers."""

import threading

import pytest

from validatorvm.utils import poll_until, retry


class Flaky:
    def __init__(self, failures, exc=ConnectionError):
        self.failures = failures
        self.exc = exc
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc("transient")
        return "ok"


def test_retry_succeeds_after_failures():
    fn = Flaky(2)
    assert retry(fn, attempts=3, delay=0) == "ok"
    assert fn.calls == 3


def test_retry_reraises_when_exhausted():
    fn = Flaky(5)
    with pytest.raises(ConnectionError):
        retry(fn, attempts=3, delay=0)
    assert fn.calls == 3


def test_retry_does_not_catch_other_errors():
    fn = Flaky(1, exc=KeyError)
    with pytest.raises(KeyError):
        retry(fn, attempts=3, delay=0, retry_on=(ConnectionError,))
    assert fn.calls == 1


def test_poll_until_bounded():
    calls = []
    assert not poll_until(lambda: calls.append(1) and False, attempts=4, delay=0)
    assert len(calls) == 4


def test_poll_until_success():
    results = iter([False, True])
    assert poll_until(lambda: next(results), attempts=5, delay=0)


def test_poll_until_cancelled():
    cancel = threading.Event()
    cancel.set()
    calls = []
    assert not poll_until(lambda: calls.append(1) and False, attempts=10, delay=60, cancel=cancel)
    assert len(calls) == 1
