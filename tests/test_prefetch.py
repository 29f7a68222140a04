"""Tests for the double-buffered PrefetchEngine.

Verifies that:
- batches arrive in fill order, with or without the worker thread
- undecodable records are skipped without shrinking a batch
- a source that never decodes fails with ConfigurationError
- start/stop/next_batch are guarded against out-of-order use
- advance_cursor skips records without racing an in-flight fill

Concurrency tests use small sleeps and bounded joins.
"""

import threading
import time

import numpy as np
import pytest
import torch

from feedline.cursors import IndexListCursor
from feedline.errors import ConfigurationError, DecodeError, LifecycleError
from feedline.prefetch import Batch, CursorSampleSource, PrefetchEngine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SHAPE = (1, 2, 2)


class _Decoder:
    """Decode integer records into constant arrays, with knobs for failures."""

    def __init__(self, bad=(), delay: float = 0.0):
        self.bad = set(bad)
        self.delay = delay
        self.fail_all = False
        self.gate: threading.Event | None = None
        self.calls = 0

    def __call__(self, record: int):
        self.calls += 1
        if self.gate is not None:
            self.gate.wait(5)
        if self.delay:
            time.sleep(self.delay)
        if self.fail_all or record in self.bad:
            raise DecodeError(f"bad record {record}", record)
        return np.full(SHAPE, record, dtype=np.uint8), record


def _engine(n: int = 10, batch_size: int = 3, decoder=None, **kwargs):
    decoder = decoder if decoder is not None else _Decoder()
    source = CursorSampleSource(IndexListCursor(list(range(n))), decoder)
    engine = PrefetchEngine(batch_size, name="test", **kwargs)
    return engine, source, decoder


def _labels(batch: Batch) -> list[int]:
    return batch.label.tolist()


def _wait_until(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        assert time.monotonic() < deadline, "timed out"
        time.sleep(0.001)


@pytest.fixture
def running_engines():
    """Collect engines and stop them at teardown."""
    engines = []
    yield engines
    for engine in engines:
        engine.stop(timeout=5)


# ---------------------------------------------------------------------------
# Tests: ordering
# ---------------------------------------------------------------------------

class TestOrdering:
    @pytest.mark.parametrize("use_threading", [True, False])
    def test_fill_order(self, use_threading, running_engines):
        engine, source, _ = _engine(n=10, batch_size=3, use_threading=use_threading)
        running_engines.append(engine)
        engine.setup(source)
        engine.start()
        got = [_labels(engine.next_batch()) for _ in range(4)]
        assert got == [[0, 1, 2], [3, 4, 5], [6, 7, 8], [9, 0, 1]]

    def test_batch_contents(self, running_engines):
        engine, source, _ = _engine(n=4, batch_size=2)
        running_engines.append(engine)
        engine.setup(source)
        engine.start()
        batch = engine.next_batch()
        assert batch.data.shape == (2, *SHAPE)
        assert batch.data.dtype == torch.float32
        assert batch.label.dtype == torch.int64
        assert batch.batch_size == 2
        assert (batch.data[1] == 1).all()

    def test_slow_decoder(self, running_engines):
        decoder = _Decoder(delay=0.005)
        engine, source, _ = _engine(n=7, batch_size=4, decoder=decoder)
        running_engines.append(engine)
        engine.setup(source)
        engine.start()
        flat = []
        for _ in range(5):
            flat.extend(_labels(engine.next_batch()))
        assert flat == [i % 7 for i in range(20)]
        assert engine.batches_produced >= 5

    def test_shapes_reported(self):
        engine, source, _ = _engine(n=4, batch_size=2, use_threading=False)
        engine.setup(source)
        assert engine.is_setup
        assert engine.data_shape == (2, *SHAPE)
        assert engine.label_shape == (2,)


# ---------------------------------------------------------------------------
# Tests: failures
# ---------------------------------------------------------------------------

class TestFailures:
    def test_bad_records_skipped(self, running_engines):
        engine, source, _ = _engine(n=6, batch_size=4, decoder=_Decoder(bad={1, 4}))
        running_engines.append(engine)
        engine.setup(source)
        engine.start()
        assert _labels(engine.next_batch()) == [0, 2, 3, 5]
        assert _labels(engine.next_batch()) == [0, 2, 3, 5]
        assert engine.samples_skipped >= 2

    def test_all_corrupt_fails_setup(self):
        engine, source, decoder = _engine(n=5, batch_size=2, decoder=_Decoder(bad=range(5)))
        # the first record is never decodable, so pass the shape explicitly
        with pytest.raises(ConfigurationError, match="consecutive"):
            engine.setup(source, data_shape=SHAPE)

    def test_failure_limit(self):
        engine, source, _ = _engine(
            n=10, batch_size=2, decoder=_Decoder(bad={1, 2, 3}), max_consecutive_failures=3,
        )
        with pytest.raises(ConfigurationError):
            engine.setup(source)

    def test_worker_error_reraised(self, running_engines):
        engine, source, decoder = _engine(n=4, batch_size=2)
        running_engines.append(engine)
        engine.setup(source)
        decoder.fail_all = True
        engine.start()
        assert _labels(engine.next_batch()) == [0, 1]
        with pytest.raises(ConfigurationError):
            engine.next_batch()
        # the error stays raised
        with pytest.raises(ConfigurationError):
            engine.next_batch()

    def test_shape_mismatch_skipped(self):
        def decode(record):
            size = 3 if record == 1 else 2
            return np.full((1, size, size), record, dtype=np.uint8), record

        source = CursorSampleSource(IndexListCursor([0, 1, 2]), decode)
        engine = PrefetchEngine(2, use_threading=False)
        engine.setup(source)
        assert _labels(engine.next_batch()) == [0, 2]
        assert engine.samples_skipped == 1

    @pytest.mark.parametrize("use_threading", [True, False])
    def test_explicit_shape_mismatch_skipped(self, use_threading, running_engines):
        sizes = {1: 1, 3: 3}

        def decode(record):
            size = sizes.get(record, 2)
            return np.full((1, size, size), record, dtype=np.uint8), record

        source = CursorSampleSource(IndexListCursor([0, 1, 2, 3, 4, 5]), decode)
        engine = PrefetchEngine(2, use_threading=use_threading)
        running_engines.append(engine)
        engine.setup(source, data_shape=SHAPE)
        engine.start()
        assert _labels(engine.next_batch()) == [0, 2]
        assert _labels(engine.next_batch()) == [4, 5]
        assert engine.samples_skipped >= 2

    def test_setup_retry_after_failure(self):
        decoder = _Decoder(bad=range(5))
        engine, source, _ = _engine(n=5, batch_size=2, decoder=decoder)
        with pytest.raises(ConfigurationError):
            engine.setup(source, data_shape=SHAPE)
        assert not engine.is_setup
        decoder.bad.clear()
        engine.setup(source, data_shape=SHAPE)
        assert engine.is_setup

    def test_first_record_undecodable(self):
        engine, source, _ = _engine(n=3, batch_size=1, decoder=_Decoder(bad={0}))
        with pytest.raises(ConfigurationError, match="first record"):
            engine.setup(source)


# ---------------------------------------------------------------------------
# Tests: lifecycle
# ---------------------------------------------------------------------------

class TestLifecycle:
    def test_start_before_setup(self):
        engine, _, _ = _engine()
        with pytest.raises(LifecycleError):
            engine.start()

    def test_next_batch_before_setup(self):
        engine, _, _ = _engine()
        with pytest.raises(LifecycleError):
            engine.next_batch()

    def test_double_setup(self):
        engine, source, _ = _engine(use_threading=False)
        engine.setup(source)
        with pytest.raises(LifecycleError):
            engine.setup(source)

    def test_double_start(self, running_engines):
        engine, source, _ = _engine()
        running_engines.append(engine)
        engine.setup(source)
        engine.start()
        with pytest.raises(LifecycleError):
            engine.start()

    def test_stop_immediately_after_start(self):
        engine, source, _ = _engine()
        engine.setup(source)
        engine.start()
        engine.stop(timeout=5)
        assert not engine.running
        engine.stop(timeout=5)

    def test_stop_before_start(self):
        engine, source, _ = _engine()
        engine.stop()
        engine.setup(source)
        engine.stop()

    def test_next_batch_after_stop(self):
        engine, source, _ = _engine()
        engine.setup(source)
        engine.start()
        engine.next_batch()
        engine.stop(timeout=5)
        with pytest.raises(LifecycleError, match="after stop"):
            for _ in range(3):
                engine.next_batch()

    def test_stop_waits_for_in_flight_fill(self):
        decoder = _Decoder()
        engine, source, _ = _engine(n=4, batch_size=2, decoder=decoder)
        engine.setup(source)
        decoder.gate = threading.Event()
        engine.start()
        calls = decoder.calls
        engine.next_batch()
        _wait_until(lambda: decoder.calls > calls)
        # the worker is now blocked inside a fill
        with pytest.raises(LifecycleError, match="did not exit"):
            engine.stop(timeout=0.05)
        decoder.gate.set()
        engine.stop(timeout=5)
        assert not engine.running

    def test_no_threading_start_is_noop(self):
        engine, source, _ = _engine(use_threading=False)
        engine.setup(source)
        engine.start()
        assert not engine.running

    def test_no_threading_double_start(self):
        engine, source, _ = _engine(use_threading=False)
        engine.setup(source)
        engine.start()
        with pytest.raises(LifecycleError):
            engine.start()

    def test_invalid_batch_size(self):
        with pytest.raises(ConfigurationError):
            PrefetchEngine(0)

    def test_repr(self):
        engine, _, _ = _engine()
        assert "name='test'" in repr(engine)


# ---------------------------------------------------------------------------
# Tests: advance_cursor
# ---------------------------------------------------------------------------

class TestAdvanceCursor:
    @pytest.mark.parametrize("use_threading", [True, False])
    def test_skips_after_staged_batch(self, use_threading, running_engines):
        engine, source, _ = _engine(n=10, batch_size=2, use_threading=use_threading)
        running_engines.append(engine)
        engine.setup(source)
        engine.start()
        engine.advance_cursor(3)
        assert _labels(engine.next_batch()) == [0, 1]
        assert _labels(engine.next_batch()) == [5, 6]

    def test_does_not_decode(self):
        engine, source, decoder = _engine(n=10, batch_size=2, use_threading=False)
        engine.setup(source)
        calls = decoder.calls
        engine.advance_cursor(5)
        assert decoder.calls == calls

    def test_waits_for_fill(self, running_engines):
        decoder = _Decoder(delay=0.02)
        engine, source, _ = _engine(n=20, batch_size=3, decoder=decoder)
        running_engines.append(engine)
        engine.setup(source)
        engine.start()
        calls = decoder.calls
        engine.next_batch()
        _wait_until(lambda: decoder.calls > calls)   # worker is filling [3, 4, 5]
        engine.advance_cursor(2)     # waits for that fill, then skips 6 and 7
        assert _labels(engine.next_batch()) == [3, 4, 5]
        assert _labels(engine.next_batch()) == [8, 9, 10]

    def test_before_setup(self):
        engine, _, _ = _engine()
        with pytest.raises(LifecycleError):
            engine.advance_cursor(1)
