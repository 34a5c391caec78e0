from __future__ import annotations

import hashlib
import io
import logging
import mimetypes
import os
import shutil
import subprocess
import tempfile
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional, Tuple
from urllib.parse import unquote, urlparse

import numpy as np
import requests
from PIL import Image, ImageOps

from sampling import PixelBuffer, as_buffer

try:
    import mss  # fast, cross-platform screen capture
except Exception:
    mss = None

log = logging.getLogger("dotter.sources")

VIDEO_EXTS = (".mp4", ".mov", ".mkv", ".avi", ".webm", ".m4v")


# =============== Fetcher & Loader ===============
class FileFetcher:
    """Fetch bytes from http(s) / file:// / local path with a small on-disk cache for URLs."""

    def __init__(self, cache_dir: Optional[Path] = None, timeout: float = 20.0) -> None:
        self.timeout = timeout
        self.cache_dir = cache_dir or Path(tempfile.gettempdir()) / "dotter_cache"
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self._session = requests.Session()
        self._session.headers.update({"User-Agent": "dotter/1.0 (+https://local)"})

    def fetch(self, src: str) -> Tuple[bytes, Optional[str]]:
        parsed = urlparse(src)
        scheme = (parsed.scheme or "").lower()
        if scheme in ("http", "https"):
            return self._fetch_http_cached(src)
        if scheme == "file":
            return self._fetch_local(local_path(src))
        if scheme == "" or (os.name == "nt" and len(scheme) == 1):  # C:\... parses as scheme "c"
            return self._fetch_local(src)
        raise ValueError(f"Unsupported URL scheme: {scheme}")

    def _cache_key(self, url: str) -> Path:
        h = hashlib.sha256(url.encode("utf-8")).hexdigest()[:32]
        return self.cache_dir / f"{h}.bin"

    def _fetch_http_cached(self, url: str) -> Tuple[bytes, Optional[str]]:
        key = self._cache_key(url)
        if key.exists():
            try:
                raw = key.read_bytes()
            except OSError as e:
                log.debug("Cache read failed for %s: %s", key.name, e)
            else:
                log.info("Cache hit: %s", key.name)
                return raw, mimetypes.guess_type(url)[0]
        log.info("Fetching: %s", url)
        r = self._session.get(url, timeout=self.timeout)
        r.raise_for_status()
        raw = r.content
        try:
            key.write_bytes(raw)
        except OSError as e:
            log.debug("Cache write failed for %s: %s", key.name, e)
        return raw, r.headers.get("Content-Type")

    def _fetch_local(self, path_str: str) -> Tuple[bytes, Optional[str]]:
        p = Path(path_str)
        if not p.exists() or not p.is_file():
            raise FileNotFoundError(f"Input file not found: {p}")
        return p.read_bytes(), mimetypes.guess_type(p.name)[0]


class ImageLoader:
    """Decode bytes → Pillow image (RGBA kept, everything else RGB). Optional max-size for speed/RAM."""

    def load(self, raw: bytes, content_type: Optional[str] = None, *, max_size: Optional[int] = None) -> Image.Image:
        try:
            img = Image.open(io.BytesIO(raw))
            img.load()
        except Exception as e:
            raise ValueError(f"Failed to decode image: {e}") from e

        img = ImageOps.exif_transpose(img)
        if img.mode == "L":
            img = ImageOps.colorize(img, "black", "white")
        # alpha matters to the halftone (transparent samples are skipped)
        keep_alpha = img.mode in ("RGBA", "LA", "PA") or (img.mode == "P" and "transparency" in img.info)
        img = img.convert("RGBA" if keep_alpha else "RGB")

        if max_size:
            img.thumbnail((max_size, max_size), Image.Resampling.LANCZOS)
        return img


def local_path(src: str) -> str:
    p = urlparse(src)
    if (p.scheme or "").lower() == "file":
        path = unquote(p.path)
        if os.name == "nt" and path.startswith("/"):
            path = path[1:]
        return path
    return src


def is_video_path_or_url(src: str, content_type: Optional[str] = None) -> bool:
    if content_type and content_type.lower().startswith("video/"):
        return True
    p = urlparse(src)
    path = (p.path or src).lower()
    return path.endswith(VIDEO_EXTS)


def is_video_output_path(p: Path) -> bool:
    return Path(p).suffix.lower() in VIDEO_EXTS


def infer_format_from_path(p: Path) -> str:
    ext = Path(p).suffix.lower()
    if ext in (".jpg", ".jpeg"):
        return "JPEG"
    if ext == ".webp":
        return "WEBP"
    return "PNG"


def save_image(img: Image.Image, path: Path, *, background: Tuple[int, int, int] = (255, 255, 255)) -> None:
    """PNG/WEBP keep alpha; JPEG is flattened onto `background`."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fmt = infer_format_from_path(path)
    if fmt == "JPEG" and img.mode != "RGB":
        flat = Image.new("RGB", img.size, background)
        flat.paste(img, mask=img.getchannel("A") if img.mode == "RGBA" else None)
        img = flat
    img.save(path, format=fmt, optimize=True)


def pil_to_bgr(img: Image.Image, background: Tuple[int, int, int] = (255, 255, 255)) -> np.ndarray:
    if img.mode == "RGBA":
        flat = Image.new("RGB", img.size, background)
        flat.paste(img, mask=img.getchannel("A"))
        img = flat
    arr = np.asarray(img.convert("RGB"))
    return arr[:, :, ::-1].copy()


# =============== FFmpeg ===============
def resolve_ffmpeg(bin_hint: str = "ffmpeg") -> str:
    p = Path(bin_hint)
    if p.is_dir():
        for name in ("ffmpeg.exe", "ffmpeg"):
            cand = p / name
            if cand.exists():
                return str(cand)
    if p.exists() and p.is_file():
        return str(p)
    hit = shutil.which(bin_hint)
    if hit:
        return hit
    raise FileNotFoundError(f"FFmpeg not found: {bin_hint}")


def _resolve_ffprobe(ffmpeg_bin: str) -> str:
    ffmpeg_path = resolve_ffmpeg(ffmpeg_bin)
    # ffprobe usually sits next to ffmpeg; else PATH
    ffprobe = Path(ffmpeg_path).with_name("ffprobe.exe" if os.name == "nt" else "ffprobe")
    if ffprobe.exists():
        return str(ffprobe)
    hit = shutil.which("ffprobe")
    if hit:
        return hit
    raise FileNotFoundError("ffprobe not found (needed for video input). Install a full FFmpeg build (ffmpeg+ffprobe).")


def parse_frame_rate(fr: str, default: float = 30.0) -> float:
    # r_frame_rate like "30000/1001"
    fr = (fr or "").strip()
    if not fr:
        return default
    if "/" in fr:
        a, b = fr.split("/", 1)
        return float(a) / float(b) if float(b) != 0 else default
    return float(fr)


def probe_video(src: str, ffmpeg_bin: str = "ffmpeg") -> Tuple[int, int, float]:
    ffprobe = _resolve_ffprobe(ffmpeg_bin)
    cmd = [
        ffprobe, "-v", "error",
        "-select_streams", "v:0",
        "-show_entries", "stream=width,height,r_frame_rate",
        "-of", "default=nw=1:nk=1",
        src,
    ]
    out = subprocess.check_output(cmd, stderr=subprocess.STDOUT).decode("utf-8", errors="ignore").strip().splitlines()
    if len(out) < 3:
        raise RuntimeError(f"ffprobe failed to read stream info for: {src}")
    return int(out[0].strip()), int(out[1].strip()), parse_frame_rate(out[2])


def fit_size(w: int, h: int, max_size: Optional[int]) -> Tuple[int, int]:
    """Scale (w, h) so the longest side is <= max_size; result is even-sized."""
    if not max_size or max_size <= 0 or max(w, h) <= max_size:
        return w, h
    if w >= h:
        out_w = int(max_size)
        out_h = int(round(h * (out_w / w)))
    else:
        out_h = int(max_size)
        out_w = int(round(w * (out_h / h)))
    # even sizes keep libx264 happy
    return max(2, (out_w // 2) * 2), max(2, (out_h // 2) * 2)


class _PipeDrainer:
    """Keeps the tail of a subprocess pipe so a blocked stderr never stalls ffmpeg."""

    def __init__(self, stream) -> None:
        self._stream = stream
        self._buf = bytearray()
        self._stop = threading.Event()
        self._t = threading.Thread(target=self._run, daemon=True)

    def start(self) -> None:
        self._t.start()

    def _run(self) -> None:
        try:
            while not self._stop.is_set():
                chunk = self._stream.read(8192)
                if not chunk:
                    break
                self._buf[:] = (self._buf + chunk)[-65536:]
        except (OSError, ValueError):
            pass  # pipe closed under us

    def stop(self) -> None:
        self._stop.set()
        self._t.join(timeout=0.5)

    def last_text(self) -> str:
        return self._buf.decode(errors="ignore")


def _read_exact(stream, n: int) -> bytes:
    buf = bytearray()
    while len(buf) < n:
        chunk = stream.read(n - len(buf))
        if not chunk:
            break
        buf += chunk
    return bytes(buf)


def iter_video_frames(
    src: str,
    *,
    ffmpeg_bin: str = "ffmpeg",
    max_size: Optional[int] = None,
    target_fps: Optional[float] = None,
) -> Tuple[int, int, float, Iterator[PixelBuffer]]:
    """
    Decode a video with ffmpeg straight to RGBA frames.
    Returns (width, height, fps, frames); closing the generator kills ffmpeg.
    """
    ffmpeg_path = resolve_ffmpeg(ffmpeg_bin)
    in_w, in_h, in_fps = probe_video(src, ffmpeg_bin=ffmpeg_bin)
    out_w, out_h = fit_size(in_w, in_h, max_size)
    out_fps = float(target_fps) if (target_fps and target_fps > 0) else float(in_fps or 30.0)

    vf_parts = []
    if target_fps and target_fps > 0:
        vf_parts.append(f"fps={float(target_fps)}")
    if (out_w, out_h) != (in_w, in_h):
        vf_parts.append(f"scale={out_w}:{out_h}")

    cmd = [ffmpeg_path, "-hide_banner", "-nostats", "-loglevel", "error", "-i", src]
    if vf_parts:
        cmd += ["-vf", ",".join(vf_parts)]
    cmd += ["-pix_fmt", "rgba", "-f", "rawvideo", "-an", "-sn", "-dn", "-"]

    log.debug("Spawning ffmpeg: %s", " ".join(cmd))
    proc = subprocess.Popen(
        cmd,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        creationflags=getattr(subprocess, "CREATE_NO_WINDOW", 0) if os.name == "nt" else 0,
        bufsize=0,
    )
    if proc.stdout is None or proc.stderr is None:
        raise RuntimeError("Failed to start ffmpeg video decode (no pipes).")

    drainer = _PipeDrainer(proc.stderr)
    drainer.start()
    frame_bytes = out_w * out_h * 4

    def gen() -> Iterator[PixelBuffer]:
        try:
            while True:
                buf = _read_exact(proc.stdout, frame_bytes)
                if not buf:
                    break
                if len(buf) < frame_bytes:
                    raise RuntimeError(
                        f"Short read from ffmpeg (got {len(buf)} of {frame_bytes}). rc={proc.poll()}\n"
                        f"ffmpeg stderr:\n{drainer.last_text()}"
                    )
                yield PixelBuffer.from_bytes(buf, out_w, out_h)
        finally:
            proc.kill()
            proc.wait()
            drainer.stop()

    return out_w, out_h, out_fps, gen()


class FFMpegWriter:
    """Pipe BGR frames into ffmpeg/libx264."""

    def __init__(self, path: str, w: int, h: int, fps: float, crf: int = 18, preset: str = "veryfast",
                 ffmpeg_bin: str = "ffmpeg") -> None:
        ffmpeg_path = resolve_ffmpeg(ffmpeg_bin)
        cmd = [ffmpeg_path, "-y",
               "-f", "rawvideo", "-pix_fmt", "bgr24", "-s", f"{w}x{h}", "-r", f"{fps}", "-i", "-",
               "-an",
               "-c:v", "libx264", "-preset", preset, "-crf", str(crf),
               "-pix_fmt", "yuv420p",
               "-movflags", "+faststart",
               path]
        log.debug("Spawning ffmpeg: %s", " ".join(cmd))
        self.proc = subprocess.Popen(
            cmd,
            stdin=subprocess.PIPE, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL,
            creationflags=getattr(subprocess, "CREATE_NO_WINDOW", 0),
        )
        self.w, self.h = w, h
        self.frames = 0

    def write_bgr(self, frame_bgr: np.ndarray) -> None:
        self.proc.stdin.write(frame_bgr.tobytes())
        self.frames += 1

    def write(self, img: Image.Image) -> None:
        if img.size != (self.w, self.h):
            img = img.resize((self.w, self.h), Image.Resampling.LANCZOS)
        self.write_bgr(pil_to_bgr(img))

    def close(self) -> None:
        try:
            self.proc.stdin.close()
        except OSError as e:  # ffmpeg already gone
            log.debug("ffmpeg stdin close: %s", e)
        self.proc.wait(timeout=5)


# =============== Frame sources ===============
class FrameSource:
    """
    A frame producer for the continuous renderer.

    read() returns the next frame or None (nothing new this tick). `paused`
    makes the renderer skip the source without reading; `ended` stops the loop.
    close() is idempotent.
    """

    def __init__(self) -> None:
        self.paused = False
        self.ended = False
        self.closed = False

    def read(self) -> Optional[PixelBuffer]:  # pragma: no cover
        raise NotImplementedError

    def close(self) -> None:
        self.closed = True

    def __enter__(self) -> "FrameSource":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class StillSource(FrameSource):
    """The same image on every read."""

    def __init__(self, image) -> None:
        super().__init__()
        self.buffer = as_buffer(image)

    def read(self) -> Optional[PixelBuffer]:
        return self.buffer


class VideoSource(FrameSource):
    """Decoded video frames via ffmpeg. The subprocess starts on the first read."""

    def __init__(self, src: str, *, ffmpeg_bin: str = "ffmpeg", max_size: Optional[int] = None,
                 target_fps: Optional[float] = None) -> None:
        super().__init__()
        self.src = local_path(src)
        self.ffmpeg_bin = ffmpeg_bin
        self.max_size = max_size
        self.target_fps = target_fps
        self.size: Optional[Tuple[int, int]] = None
        self.fps: Optional[float] = None
        self._frames: Optional[Iterator[PixelBuffer]] = None

    def open(self) -> "VideoSource":
        if self._frames is None:
            w, h, self.fps, self._frames = iter_video_frames(
                self.src, ffmpeg_bin=self.ffmpeg_bin, max_size=self.max_size, target_fps=self.target_fps,
            )
            self.size = (w, h)
            log.info("Video %s: %dx%d @ %.3f fps", self.src, w, h, self.fps)
        return self

    def read(self) -> Optional[PixelBuffer]:
        if self.ended or self.closed:
            return None
        self.open()
        try:
            return next(self._frames)
        except StopIteration:
            self.ended = True
            return None

    def close(self) -> None:
        if self._frames is not None:
            self._frames.close()  # runs the generator's finally: kills ffmpeg
            self._frames = None
        super().close()


def parse_region(s: Optional[str]) -> Optional[Dict[str, int]]:
    if not s:
        return None
    try:
        x, y, w, h = [int(v.strip()) for v in s.split(",")]
    except ValueError:
        raise ValueError("Invalid region, expected 'x,y,w,h' (integers)") from None
    return {"left": x, "top": y, "width": w, "height": h}


class ScreenSource(FrameSource):
    """
    Screen capture via mss (monitor index or x,y,w,h region).
    The mss handle is created on the first read, in the thread that reads.
    """

    def __init__(self, *, monitor: int = 1, region: Optional[Dict[str, int]] = None,
                 max_size: Optional[int] = None) -> None:
        super().__init__()
        if mss is None:
            raise RuntimeError("Missing dependency: mss. Install with 'pip install mss'")
        self.monitor = max(1, int(monitor))
        self.region = region
        self.max_size = max_size
        self._sct: Any = None
        self._bbox: Optional[Dict[str, int]] = None

    def describe(self) -> str:
        return "custom-region" if self.region else f"monitor:{self.monitor}"

    def _open(self) -> None:
        self._sct = mss.mss()
        if self.region:
            self._bbox = dict(self.region)
            return
        mons = self._sct.monitors
        if self.monitor >= len(mons):
            raise ValueError(f"Monitor index {self.monitor} out of range. Available: 1..{len(mons) - 1}")
        self._bbox = mons[self.monitor]

    def read(self) -> Optional[PixelBuffer]:
        if self.closed:
            return None
        if self._sct is None:
            self._open()
        raw = self._sct.grab(self._bbox)
        # mss raw is BGRA
        img = Image.frombuffer("RGB", (raw.width, raw.height), raw.bgra, "raw", "BGRX", 0, 1)
        if self.max_size:
            img.thumbnail((self.max_size, self.max_size), Image.Resampling.LANCZOS)
        return PixelBuffer.from_image(img)

    def close(self) -> None:
        if self._sct is not None:
            self._sct.close()
            self._sct = None
        super().close()


class CallableSource(FrameSource):
    """
    Wraps any frame producer: a callable returning a PixelBuffer, Pillow image,
    pixel array, or None. Raising StopIteration ends the source.
    """

    def __init__(self, producer: Callable[[], Any], on_close: Optional[Callable[[], None]] = None) -> None:
        super().__init__()
        self.producer = producer
        self.on_close = on_close

    def read(self) -> Optional[PixelBuffer]:
        if self.ended or self.closed:
            return None
        try:
            return as_buffer(self.producer())
        except StopIteration:
            self.ended = True
            return None

    def close(self) -> None:
        if not self.closed and self.on_close is not None:
            self.on_close()
        super().close()
