from types import SimpleNamespace

import pytest

from planner import BlockRange, plan_next_range


def _plan(sync_height, start_height=100, head=250, depth=10, batch=50):
    listener = SimpleNamespace(sync_height=sync_height)
    contract = SimpleNamespace(start_height=start_height)
    return plan_next_range(listener, contract, head, depth, batch)


def test_first_range_is_batch_bounded():
    assert _plan(100) == BlockRange(101, 150)


def test_range_stops_at_safe_head():
    assert _plan(220) == BlockRange(221, 240)


def test_caught_up_is_noop():
    assert _plan(240) is None
    assert _plan(245) is None


def test_not_enough_confirmations_is_noop():
    assert _plan(100, head=105, depth=10) is None


def test_height_below_start_is_clamped():
    block_range = _plan(10, start_height=100, batch=50)
    assert block_range == BlockRange(100, 149)
    assert len(block_range) == 50


@pytest.mark.parametrize("sync_height", [0, 99, 100, 150, 199, 238, 239])
@pytest.mark.parametrize("batch", [1, 7, 50, 1000])
def test_ranges_respect_confirmations_and_batch(sync_height, batch):
    block_range = _plan(sync_height, batch=batch)
    assert block_range is not None
    assert block_range.end <= 250 - 10
    assert len(block_range) <= batch
    assert block_range.start == max(sync_height + 1, 100)


def test_rejects_empty_batch():
    with pytest.raises(ValueError):
        _plan(100, batch=0)
