"""Tests for cancellation tokens."""

import time

import pytest

from anitrack_sync.cancellation import CancelToken, never_cancelled
from anitrack_sync.exceptions import OperationCancelledError


def test_token_without_deadline():
    token = never_cancelled()

    assert not token.cancelled
    assert token.remaining() is None
    assert token.timeout_for(30) == 30
    token.raise_if_cancelled()


def test_explicit_cancel():
    token = CancelToken(timeout=60)
    token.cancel()

    assert token.cancelled
    with pytest.raises(OperationCancelledError):
        token.raise_if_cancelled()


def test_deadline_expires():
    token = CancelToken(timeout=0.01)
    time.sleep(0.05)

    assert token.cancelled
    assert token.remaining() == 0.0


def test_request_timeout_is_capped_by_deadline():
    token = CancelToken(timeout=5)

    assert token.timeout_for(30) <= 5
    assert token.timeout_for(1) == 1
