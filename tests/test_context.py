import threading

import pytest

from ocm_controller.context import Context
from ocm_controller.errors import CancelledError


def test_background_never_expires():
    ctx = Context.background()
    assert not ctx.done()
    assert ctx.remaining() is None
    assert ctx.remaining(5) == 5
    ctx.check()


def test_cancel():
    event = threading.Event()
    ctx = Context(timeout=60, cancel_event=event)
    assert 0 < ctx.remaining(120) <= 60
    event.set()
    assert ctx.done()
    with pytest.raises(CancelledError, match="cancelled") as info:
        ctx.check()
    assert info.value.retryable


def test_deadline():
    ctx = Context(timeout=0)
    assert ctx.done()
    assert ctx.remaining(10) == 0.0
    with pytest.raises(CancelledError, match="deadline"):
        ctx.check()
