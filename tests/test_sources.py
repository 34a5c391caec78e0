# Fetching, decoding, saving and the frame source wrappers.
import os

import numpy as np
import pytest
from PIL import Image

from sampling import PixelBuffer
from sources import (
    CallableSource,
    FileFetcher,
    ImageLoader,
    StillSource,
    VideoSource,
    fit_size,
    infer_format_from_path,
    is_video_output_path,
    is_video_path_or_url,
    local_path,
    parse_frame_rate,
    parse_region,
    pil_to_bgr,
    resolve_ffmpeg,
    save_image,
)


def _png_bytes(tmp_path, img):
    p = tmp_path / "in.png"
    img.save(p)
    return p.read_bytes()


# ---------------- paths & formats ----------------

@pytest.mark.skipif(os.name == "nt", reason="posix file URLs")
def test_local_path_unquotes_file_urls():
    assert local_path("file:///tmp/a%20b.png") == "/tmp/a b.png"
    assert local_path("relative/c.png") == "relative/c.png"


@pytest.mark.parametrize("src,ctype,expected", [
    ("https://host/clip.MP4?t=3", None, True),
    ("movie.webm", None, True),
    ("photo.png", None, False),
    ("https://host/stream", "video/mp4", True),
    ("https://host/stream", "image/png", False),
])
def test_is_video_path_or_url(src, ctype, expected):
    assert is_video_path_or_url(src, ctype) is expected


def test_output_kind_and_format():
    assert is_video_output_path("out/a.mov")
    assert not is_video_output_path("out/a.png")
    assert infer_format_from_path("a.JPG") == "JPEG"
    assert infer_format_from_path("a.webp") == "WEBP"
    assert infer_format_from_path("a.tiff") == "PNG"


@pytest.mark.parametrize("size,max_size,expected", [
    ((1920, 1080), 640, (640, 360)),
    ((301, 1001), 500, (150, 500)),
    ((100, 50), None, (100, 50)),
    ((100, 50), 400, (100, 50)),
])
def test_fit_size(size, max_size, expected):
    assert fit_size(*size, max_size) == expected


def test_parse_frame_rate():
    assert parse_frame_rate("30000/1001") == pytest.approx(29.97, abs=0.01)
    assert parse_frame_rate("25") == 25.0
    assert parse_frame_rate("") == 30.0
    assert parse_frame_rate("1/0", default=24.0) == 24.0


def test_parse_region():
    assert parse_region(None) is None
    assert parse_region("10, 20, 300, 200") == {"left": 10, "top": 20, "width": 300, "height": 200}
    with pytest.raises(ValueError):
        parse_region("1,2")


def test_missing_ffmpeg_is_reported():
    with pytest.raises(FileNotFoundError):
        resolve_ffmpeg("no-such-ffmpeg-binary-here")


# ---------------- fetch & decode ----------------

def test_fetch_local_file(tmp_path):
    p = tmp_path / "a.png"
    p.write_bytes(b"abc")
    raw, ctype = FileFetcher(cache_dir=tmp_path / "cache").fetch(str(p))
    assert raw == b"abc"
    assert ctype == "image/png"


def test_fetch_errors(tmp_path):
    fetcher = FileFetcher(cache_dir=tmp_path / "cache")
    with pytest.raises(FileNotFoundError):
        fetcher.fetch(str(tmp_path / "missing.png"))
    with pytest.raises(ValueError):
        fetcher.fetch("ftp://host/a.png")


def test_loader_keeps_alpha_only_when_present(tmp_path, solid):
    loader = ImageLoader()
    assert loader.load(_png_bytes(tmp_path, solid(8, 8, (1, 2, 3, 40)))).mode == "RGBA"
    assert loader.load(_png_bytes(tmp_path, Image.new("RGB", (8, 8)))).mode == "RGB"
    assert loader.load(_png_bytes(tmp_path, Image.new("L", (8, 8), 128))).mode == "RGB"


def test_loader_max_size(tmp_path):
    img = ImageLoader().load(_png_bytes(tmp_path, Image.new("RGB", (400, 100))), max_size=100)
    assert img.size == (100, 25)


def test_loader_rejects_garbage():
    with pytest.raises(ValueError):
        ImageLoader().load(b"definitely not an image")


# ---------------- save & flatten ----------------

def test_pil_to_bgr_flattens_alpha(solid):
    opaque = pil_to_bgr(solid(2, 2, (255, 0, 0, 255)))
    assert opaque.shape == (2, 2, 3)
    assert opaque[0, 0].tolist() == [0, 0, 255]
    clear = pil_to_bgr(solid(2, 2, (255, 0, 0, 0)), background=(0, 128, 0))
    assert clear[0, 0].tolist() == [0, 128, 0]


def test_save_jpeg_flattens_onto_background(tmp_path, solid):
    out = tmp_path / "sub" / "a.jpg"
    save_image(solid(16, 16, (0, 0, 0, 0)), out, background=(255, 255, 255))
    with Image.open(out) as img:
        assert img.mode == "RGB"
        assert min(img.getpixel((8, 8))) > 245


def test_save_png_keeps_alpha(tmp_path, solid):
    out = tmp_path / "a.png"
    save_image(solid(4, 4, (10, 20, 30, 0)), out)
    with Image.open(out) as img:
        assert img.mode == "RGBA"
        assert img.getpixel((0, 0))[3] == 0


# ---------------- frame sources ----------------

def test_still_source_repeats_its_frame(solid):
    src = StillSource(solid(5, 3))
    first = src.read()
    assert isinstance(first, PixelBuffer)
    assert (first.width, first.height) == (5, 3)
    assert src.read() is first
    assert not src.ended


def test_callable_source_wraps_arrays_and_closes_once():
    closed = []
    src = CallableSource(lambda: np.zeros((4, 6, 3), np.uint8), on_close=lambda: closed.append(1))
    buf = src.read()
    assert (buf.width, buf.height) == (6, 4)
    with src:
        pass
    src.close()
    assert closed == [1]
    assert src.read() is None


def test_video_source_close_before_open():
    src = VideoSource("clip.mp4")
    src.close()
    assert src.closed
    assert src.read() is None
