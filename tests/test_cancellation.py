import io
import time

import pytest

from ocmctf.cancellation import (
    Canceled,
    Context,
    DeadlineExceeded,
    new_ctx_reader,
)


class _TimeoutRecorder(io.BytesIO):
    def __init__(self, data):
        super().__init__(data)
        self.timeouts = []

    def settimeout(self, value):
        self.timeouts.append(value)


def test_new_ctx_reader_success():
    data = b"hello world"
    reader = new_ctx_reader(Context(), io.BytesIO(data))
    assert reader.read(len(data)) == data


def test_new_ctx_reader_cancelled_context():
    ctx = Context().with_cancel()
    ctx.cancel()
    source = io.BytesIO(b"test")
    reader = new_ctx_reader(ctx, source)
    with pytest.raises(Canceled):
        reader.read(4)
    assert source.tell() == 0


def test_new_ctx_reader_with_deadline():
    ctx = Context().with_timeout(0.01)
    data = b"timeout test"
    reader = new_ctx_reader(ctx, io.BytesIO(data + data))
    assert reader.read(len(data)) == data

    time.sleep(0.02)
    with pytest.raises(DeadlineExceeded):
        reader.read(len(data))


def test_background_context_has_no_deadline_or_error():
    ctx = Context()
    assert ctx.deadline() is None
    assert ctx.err() is None


def test_child_ends_with_parent():
    parent = Context().with_cancel()
    child = parent.with_cancel()
    assert child.err() is None
    parent.cancel()
    source = io.BytesIO(b"data")
    reader = new_ctx_reader(child, source)
    with pytest.raises(Canceled):
        reader.read(1)
    assert source.tell() == 0


def test_parent_survives_child_cancel():
    parent = Context().with_cancel()
    child = parent.with_cancel()
    child.cancel()
    assert isinstance(child.err(), Canceled)
    assert parent.err() is None


def test_child_deadline_never_exceeds_parent():
    parent = Context().with_timeout(1)
    child = parent.with_timeout(100)
    assert child.deadline() == parent.deadline()
    shorter = parent.with_timeout(0.5)
    assert shorter.deadline() < parent.deadline()


def test_cancel_after_expiry_reports_deadline():
    ctx = Context().with_timeout(0)
    ctx.cancel()
    reader = new_ctx_reader(ctx, io.BytesIO(b"data"))
    with pytest.raises(DeadlineExceeded):
        reader.read(1)


def test_deadline_applied_to_reader_timeout():
    source = _TimeoutRecorder(b"data")
    ctx = Context().with_timeout(5)
    reader = new_ctx_reader(ctx, source)
    assert len(source.timeouts) == 1
    assert 0 < source.timeouts[0] <= 5
    assert reader.read() == b"data"


def test_no_deadline_leaves_reader_timeout_alone():
    source = _TimeoutRecorder(b"data")
    new_ctx_reader(Context(), source)
    assert source.timeouts == []


def test_reader_close_closes_source():
    source = io.BytesIO(b"data")
    with new_ctx_reader(Context(), source) as reader:
        assert reader.read(2) == b"da"
    assert source.closed