# orchestrator.py: when renders happen
# -----------------------------------------------------------------------------
# StaticRenderer      still images. Every change restarts a debounce timer, so a
#                     burst of edits coalesces into one render. flush() renders
#                     right away.
#                       IDLE -> SCHEDULED -> RENDERING -> IDLE
#
# ContinuousRenderer  video / screen / any FrameSource. One tick is
#                     read -> render -> present; ticks never overlap. A paused
#                     source skips the tick (no read, no render) and the loop
#                     keeps RUNNING; an ended source stops it.
#                       IDLE -> RUNNING -> IDLE
#
# Both take a config snapshot at the start of a run, so a config replaced
# mid-frame only shows up on the next one.
# -----------------------------------------------------------------------------

from __future__ import annotations

import enum
import logging
import threading
import time
from typing import Any, Callable, Optional

from PIL import Image

from palettes import _rng
from halftone import render
from settings import HalftoneConfig

__all__ = ["State", "StaticRenderer", "ContinuousRenderer"]

log = logging.getLogger("dotter.orchestrator")

Present = Callable[[Image.Image], Any]


class State(enum.Enum):
    IDLE = "idle"
    SCHEDULED = "scheduled"
    RENDERING = "rendering"
    RUNNING = "running"


# ============================ StaticRenderer ============================

class StaticRenderer:
    def __init__(
        self,
        present: Present,
        config: Optional[HalftoneConfig] = None,
        *,
        source=None,
        delay: float = 0.2,
        seed: Optional[int] = None,
        pipeline=render,
        on_error: Optional[Callable[[Exception], Any]] = None,
    ) -> None:
        self.present = present
        self.delay = max(0.0, float(delay))
        self.seed = seed
        self.pipeline = pipeline
        self.on_error = on_error
        self.renders = 0

        self._config = config or HalftoneConfig()
        self._source = source
        self._lock = threading.Lock()          # config / source / timer
        self._render_lock = threading.Lock()   # one render at a time
        self._timer: Optional[threading.Timer] = None
        self._rendering = False

    @property
    def state(self) -> State:
        with self._lock:
            if self._rendering:
                return State.RENDERING
            return State.SCHEDULED if self._timer is not None else State.IDLE

    @property
    def config(self) -> HalftoneConfig:
        with self._lock:
            return self._config

    def update(self, config: Optional[HalftoneConfig] = None, source=None) -> None:
        """Replace the config and/or the source, then schedule a render."""
        with self._lock:
            if config is not None:
                self._config = config
            if source is not None:
                self._source = source
        self.schedule()

    def schedule(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            t = threading.Timer(self.delay, self._fire)
            t.daemon = True
            self._timer = t
        t.start()

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def flush(self) -> Optional[Image.Image]:
        """Render now (pending timer dropped). Errors propagate to the caller."""
        self.cancel()
        return self._run(timer=None)

    def _fire(self) -> None:
        timer = threading.current_thread()
        try:
            self._run(timer=timer)
        except Exception as e:
            log.exception("Render failed: %s", e)
            if self.on_error is not None:
                self.on_error(e)

    def _run(self, timer) -> Optional[Image.Image]:
        with self._render_lock:
            with self._lock:
                if timer is not None:
                    if self._timer is not timer:
                        return None  # superseded by a newer schedule()
                    self._timer = None
                config, source = self._config, self._source
                self._rendering = True
            try:
                t0 = time.perf_counter()
                out = self.pipeline(source, config, seed=self.seed)
                log.debug("Static render in %.1f ms", (time.perf_counter() - t0) * 1000)
            finally:
                with self._lock:
                    self._rendering = False
            self.renders += 1
            if out is not None:
                self.present(out)
            return out


# ============================ ContinuousRenderer ============================

class ContinuousRenderer:
    """
    Frame loop over a FrameSource.

      start()  loop on a background thread, paced to `fps`
      run()    same loop in the calling thread (returns when it ends)
      tick()   one cycle, for callers that drive their own clock (e.g. a Qt timer)
      stop()   stop token -> join -> release the source

    A loop only ever renders and releases the source it started with. If stop()
    gives up waiting on a long frame, the source is detached right away and the
    old loop closes it once that frame is done.
    """

    def __init__(
        self,
        present: Present,
        config: Optional[HalftoneConfig] = None,
        *,
        source=None,
        fps: Optional[float] = 24.0,
        rng=None,
        seed: Optional[int] = None,
        pipeline=render,
    ) -> None:
        self.present = present
        self.source = source
        self.fps = fps
        self.rng = rng if rng is not None else _rng(seed)
        self.pipeline = pipeline
        self.frames = 0
        self.skipped = 0
        self.error: Optional[BaseException] = None

        self._config = config or HalftoneConfig()
        self._lock = threading.Lock()         # config
        self._cycle = threading.Lock()        # one tick at a time
        self._release_lock = threading.Lock()  # source / state
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._state = State.IDLE

    @property
    def state(self) -> State:
        return self._state

    @property
    def config(self) -> HalftoneConfig:
        with self._lock:
            return self._config

    def set_config(self, config: HalftoneConfig) -> None:
        with self._lock:
            self._config = config

    def attach(self, source) -> None:
        """Swap in a new source; the current one is stopped and released first."""
        self.stop()
        self.source = source

    # ---- cycle ----
    def begin(self) -> None:
        # fresh token per run: a loop left over from an earlier run keeps its own
        self._stop = threading.Event()
        self._state = State.RUNNING

    def tick(self) -> Optional[Image.Image]:
        return self._tick(self.source)

    def _tick(self, src) -> Optional[Image.Image]:
        with self._cycle:
            if src is None or src is not self.source or self._state is not State.RUNNING:
                return None
            if src.paused:
                self.skipped += 1
                return None
            buf = src.read()
            if buf is None or buf.empty:
                return None
            out = self.pipeline(buf, self.config, rng=self.rng)
            if out is None:
                return None
            self.present(out)
            self.frames += 1
            return out

    def _done(self, stop: threading.Event, src, frames: int,
              max_frames: Optional[int], t_end: Optional[float]) -> bool:
        if stop.is_set():
            return True
        if src is None or src.ended or src is not self.source:
            return True
        if max_frames is not None and frames >= max_frames:
            return True
        return t_end is not None and time.perf_counter() >= t_end

    def _loop(self, max_frames: Optional[int], duration: Optional[float]) -> int:
        stop, src = self._stop, self.source
        t_end = (time.perf_counter() + duration) if duration and duration > 0 else None
        frame_dt = 1.0 / self.fps if self.fps and self.fps > 0 else 0.0
        next_t = time.perf_counter()
        frames = 0
        try:
            while not self._done(stop, src, frames, max_frames, t_end):
                out = self._tick(src)
                if out is not None:
                    frames += 1
                if not frame_dt:
                    if out is None:
                        stop.wait(0.005)  # paused or nothing new
                    continue
                next_t += frame_dt
                now = time.perf_counter()
                # very behind: drop the backlog instead of bursting
                if now - next_t > 2 * frame_dt:
                    next_t = now
                elif next_t > now:
                    stop.wait(next_t - now)
        finally:
            self._release(src)
        return frames

    def run(self, max_frames: Optional[int] = None, duration: Optional[float] = None) -> int:
        """Loop in the calling thread; returns the number of frames presented by this run."""
        self.begin()
        return self._loop(max_frames, duration)

    def start(self, max_frames: Optional[int] = None, duration: Optional[float] = None) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self.begin()
        self.error = None

        def target() -> None:
            try:
                self._loop(max_frames, duration)
            except Exception as e:
                self.error = e
                log.exception("Frame loop failed: %s", e)

        self._thread = threading.Thread(target=target, name="dotter-frames", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        t, self._thread = self._thread, None
        if t is not None and t is not threading.current_thread():
            t.join(timeout=timeout)
            if t.is_alive():
                log.warning("Frame loop still busy after %.1f s; its source is closed when the frame ends", timeout)
                self._detach()
                return
        self._release(self.source)

    def _detach(self) -> None:
        with self._release_lock:
            self.source = None
            self._state = State.IDLE

    def _release(self, src) -> None:
        with self._release_lock:
            if src is not None and src is self.source:
                self.source = None
                self._state = State.IDLE
            elif self.source is None:
                self._state = State.IDLE
        if src is not None and not src.closed:
            src.close()
            log.debug("Released source %s after %d frames (%d skipped)", type(src).__name__, self.frames, self.skipped)

    def __enter__(self) -> "ContinuousRenderer":
        return self

    def __exit__(self, *exc) -> None:
        self.stop()
