"""Tests for DeltaAccumulator ordering and buffer growth."""

import pytest

from artiflow.core.enums import PayloadKind
from artiflow.core.errors import OutOfOrderDeltaError, SessionFailedError
from artiflow.core.protocols import StreamDelta
from artiflow.kernel.accumulator import DeltaAccumulator


def test_appends_in_sequence():
    acc = DeltaAccumulator()
    acc.append(StreamDelta.text(1, "Hello"))
    assert acc.append(StreamDelta.text(2, ", world")) == "Hello, world"
    assert acc.buffer == "Hello, world"
    assert acc.last_sequence == 2


def test_gaps_in_sequence_are_allowed():
    acc = DeltaAccumulator()
    acc.append(StreamDelta.text(1, "a"))
    acc.append(StreamDelta.text(5, "b"))
    assert acc.buffer == "ab"


def test_out_of_order_rejected_and_fails_session():
    acc = DeltaAccumulator()
    acc.append(StreamDelta.text(1, "a"))
    acc.append(StreamDelta.text(2, "b"))
    with pytest.raises(OutOfOrderDeltaError) as exc:
        acc.append(StreamDelta.text(2, "dup"))
    assert exc.value.sequence == 2
    assert exc.value.last_sequence == 2
    assert acc.failed is True
    # Buffer untouched by the rejected delta
    assert acc.buffer == "ab"

    with pytest.raises(SessionFailedError):
        acc.append(StreamDelta.text(3, "c"))


def test_non_text_delta_advances_sequence_only():
    acc = DeltaAccumulator()
    acc.append(StreamDelta.text(1, "text "))
    acc.append(StreamDelta(sequence=2, payload_kind=PayloadKind.TYPED_DELTA, content="x = 1"))
    acc.append(StreamDelta(sequence=3, payload_kind=PayloadKind.METADATA, content={"title": "T"}))
    assert acc.buffer == "text "
    assert acc.last_sequence == 3
    with pytest.raises(OutOfOrderDeltaError):
        acc.append(StreamDelta.text(3, "late"))


def test_empty_buffer():
    acc = DeltaAccumulator()
    assert acc.buffer == ""
    assert acc.last_sequence is None
    assert acc.failed is False
