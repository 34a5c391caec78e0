# Static (debounced) and continuous render cycles.
import threading
import time

import numpy as np
import pytest

import halftone
from orchestrator import ContinuousRenderer, State, StaticRenderer
from sampling import PixelBuffer
from settings import HalftoneConfig
from sources import CallableSource, FrameSource, StillSource


class ListSource(FrameSource):
    def __init__(self, frames):
        super().__init__()
        self.frames = list(frames)
        self.reads = 0

    def read(self):
        self.reads += 1
        if not self.frames:
            self.ended = True
            return None
        return self.frames.pop(0)


def _frame(w=24, h=24, value=0):
    return PixelBuffer.from_array(np.full((h, w, 3), value, np.uint8))


def _wait_for(cond, timeout=5.0):
    t_end = time.monotonic() + timeout
    while time.monotonic() < t_end:
        if cond():
            return True
        time.sleep(0.01)
    return False


# ---------------- continuous ----------------

def test_paused_source_never_reaches_the_resolver(monkeypatch):
    calls = []
    real = halftone.resolve_mark

    def spy(*args):
        calls.append(args)
        return real(*args)

    monkeypatch.setattr(halftone, "resolve_mark", spy)
    src = StillSource(_frame())
    src.paused = True
    shown = []
    loop = ContinuousRenderer(shown.append, source=src, fps=None, seed=0)
    loop.begin()

    for _ in range(3):
        assert loop.tick() is None
    assert calls == []
    assert shown == []
    assert loop.skipped == 3
    assert loop.state is State.RUNNING

    src.paused = False
    assert loop.tick() is not None
    assert len(calls) == 4  # 24x24 at spacing 12
    assert loop.frames == 1


def test_run_ends_with_the_source_and_releases_it():
    src = ListSource([_frame(), _frame(), _frame()])
    shown = []
    loop = ContinuousRenderer(shown.append, source=src, fps=None, seed=0)
    assert loop.run() == 3
    assert len(shown) == 3
    assert src.closed
    assert loop.source is None
    assert loop.state is State.IDLE


def test_run_stops_at_max_frames():
    src = StillSource(_frame())
    loop = ContinuousRenderer(lambda img: None, source=src, fps=None, seed=0)
    assert loop.run(max_frames=5) == 5
    assert src.closed


def test_empty_or_missing_frames_are_no_ops():
    frames = iter([None, PixelBuffer.from_bytes(b"", 0, 0), _frame()])
    src = CallableSource(lambda: next(frames))
    shown = []
    loop = ContinuousRenderer(shown.append, source=src, fps=None, seed=0)
    loop.begin()
    assert loop.tick() is None
    assert loop.tick() is None
    assert loop.tick() is not None
    assert len(shown) == 1
    # producer exhausted -> StopIteration ends the source
    assert loop.tick() is None
    assert src.ended


def test_background_loop_stop_joins_and_releases():
    src = StillSource(_frame())
    loop = ContinuousRenderer(lambda img: None, source=src, fps=200, seed=0)
    loop.start()
    assert _wait_for(lambda: loop.frames > 0)
    assert loop.state is State.RUNNING
    thread = loop._thread
    loop.stop()
    assert not thread.is_alive()
    assert src.closed
    assert loop.state is State.IDLE


def test_paused_background_loop_stays_running():
    src = StillSource(_frame())
    src.paused = True
    with ContinuousRenderer(lambda img: None, source=src, fps=100, seed=0) as loop:
        loop.start()
        assert _wait_for(lambda: loop.skipped >= 3)
        assert loop.frames == 0
        assert loop.state is State.RUNNING
        src.paused = False
        assert _wait_for(lambda: loop.frames > 0)
    assert src.closed


def test_context_manager_releases_on_error():
    src = StillSource(_frame())

    def boom(img):
        raise RuntimeError("sink failed")

    with pytest.raises(RuntimeError):
        with ContinuousRenderer(boom, source=src, fps=None, seed=0) as loop:
            loop.run()
    assert src.closed


def test_attach_releases_previous_source():
    first, second = StillSource(_frame()), StillSource(_frame())
    loop = ContinuousRenderer(lambda img: None, source=first, fps=None, seed=0)
    loop.attach(second)
    assert first.closed and not second.closed
    assert loop.source is second
    assert loop.run(max_frames=1) == 1


def test_frame_outliving_stop_does_not_release_next_source():
    entered, gate = threading.Event(), threading.Event()

    def slow(buf, config, rng=None):
        entered.set()
        gate.wait(5.0)
        return halftone.render(buf, config, rng=rng)

    first, second = StillSource(_frame()), StillSource(_frame())
    loop = ContinuousRenderer(lambda img: None, source=first, fps=None, seed=0, pipeline=slow)
    loop.start()
    assert entered.wait(2.0)
    worker = loop._thread

    loop.stop(timeout=0.05)
    assert worker.is_alive()
    assert loop.source is None
    loop.attach(second)

    gate.set()
    worker.join(2.0)
    assert not worker.is_alive()
    assert first.closed
    assert not second.closed
    assert loop.source is second
    assert loop.run(max_frames=1) == 1
    assert second.closed


def test_max_frames_counts_per_run():
    shown = []
    loop = ContinuousRenderer(shown.append, source=StillSource(_frame()), fps=None, seed=0)
    assert loop.run(max_frames=2) == 2
    loop.attach(StillSource(_frame()))
    assert loop.run(max_frames=2) == 2
    assert loop.frames == 4
    assert len(shown) == 4


def test_config_is_read_per_frame():
    seen = []

    def pipeline(buf, config, rng=None):
        seen.append(config.grid.spacing)
        return halftone.render(buf, config, rng=rng)

    loop = ContinuousRenderer(lambda img: None, source=StillSource(_frame()), fps=None, seed=0, pipeline=pipeline)
    loop.begin()
    loop.tick()
    loop.set_config(HalftoneConfig().merged({"dotSpacing": 6}))
    loop.tick()
    assert seen == [12, 6]


# ---------------- static ----------------

class FakePipeline:
    def __init__(self):
        self.calls = []

    def __call__(self, source, config, seed=None):
        self.calls.append((source, config))
        return f"image:{source}"


def test_rapid_updates_coalesce_into_one_render():
    pipeline = FakePipeline()
    done = threading.Event()
    shown = []

    def present(img):
        shown.append(img)
        done.set()

    r = StaticRenderer(present, delay=0.05, pipeline=pipeline)
    for i in range(5):
        r.update(source=i)
    assert r.state is State.SCHEDULED
    assert done.wait(2.0)
    time.sleep(0.2)
    assert [src for src, _ in pipeline.calls] == [4]
    assert shown == ["image:4"]
    assert r.renders == 1
    assert r.state is State.IDLE


def test_flush_renders_now_and_drops_the_pending_timer():
    pipeline = FakePipeline()
    shown = []
    r = StaticRenderer(shown.append, source="a", delay=0.05, pipeline=pipeline)
    r.schedule()
    assert r.flush() == "image:a"
    time.sleep(0.2)
    assert len(pipeline.calls) == 1
    assert shown == ["image:a"]


def test_static_run_uses_config_snapshot():
    pipeline = FakePipeline()
    cfg = HalftoneConfig().merged({"dotSpacing": 20})
    r = StaticRenderer(lambda img: None, cfg, source="s", pipeline=pipeline)
    r.flush()
    assert pipeline.calls[0][1] is cfg


def test_no_image_means_nothing_presented():
    shown = []
    r = StaticRenderer(shown.append, source=None, delay=0.0)
    assert r.flush() is None
    assert shown == []
    assert r.renders == 1


def test_errors_in_timer_go_to_on_error():
    errors = []
    got = threading.Event()

    def broken(source, config, seed=None):
        raise ValueError("bad frame")

    def on_error(e):
        errors.append(e)
        got.set()

    r = StaticRenderer(lambda img: None, source="x", delay=0.01, pipeline=broken, on_error=on_error)
    r.schedule()
    assert got.wait(2.0)
    assert isinstance(errors[0], ValueError)
    assert r.state is State.IDLE
