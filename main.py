from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from pathlib import Path
from time import perf_counter
from typing import Any, Dict, List, Optional

from PIL import Image

# Import registry & generators (registration happens at import time)
from palettes import REGISTRY, parse_hex_color
from halftone import render
from orchestrator import ContinuousRenderer
from settings import HalftoneConfig, config_from_extras, describe_preset, export_token, list_presets
from sources import (
    FFMpegWriter,
    FileFetcher,
    ImageLoader,
    ScreenSource,
    VideoSource,
    is_video_output_path,
    is_video_path_or_url,
    parse_region,
    pil_to_bgr,
    save_image,
)
from store import JsonPaletteStore

# Optional live preview for `stream`
try:
    import cv2
except Exception:
    cv2 = None

# =============== Logging ===============
log = logging.getLogger("dotter")


def setup_logging(verbosity: int = 0) -> None:
    level = [logging.WARNING, logging.INFO, logging.DEBUG][min(verbosity, 2)]
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(message)s",
        datefmt="%H:%M:%S",
    )


# =============== Small CLI helpers ===============
# never coerced: "01" as glyphs or "000000" as a color must stay strings
_TEXT_KEYS = frozenset({"textCharacters", "textFont", "dotColor", "backgroundColor", "quadColors", "preset", "config"})
_PREFIXES = ("halftone.", "all.")


def _coerce(v: str) -> Any:
    if v.isdigit():
        return int(v)
    try:
        return float(v)
    except ValueError:
        low = v.lower()
        if low in ("true", "false"):
            return low == "true"
    return v


def _parse_kv_pairs(pairs: Optional[List[str]]) -> Dict[str, Any]:
    """key=value pairs; a leading 'halftone.' or 'all.' on the key is dropped."""
    out: Dict[str, Any] = {}
    if not pairs:
        return out
    for p in pairs:
        if "=" not in p:
            log.warning("Ignoring extra %r (expected key=value)", p)
            continue
        k, v = p.split("=", 1)
        k = k.strip()
        for prefix in _PREFIXES:
            if k.lower().startswith(prefix):
                k = k[len(prefix):]
                break
        out[k] = v if k in _TEXT_KEYS else _coerce(v.strip())
    return out


def _extras_from_args(args: argparse.Namespace) -> Dict[str, Any]:
    extras = _parse_kv_pairs(getattr(args, "extra", None))
    if getattr(args, "preset", None):
        extras["preset"] = args.preset
    if getattr(args, "config", None):
        extras["config"] = args.config
    return extras


def _config_from_args(args: argparse.Namespace) -> HalftoneConfig:
    return config_from_extras(_extras_from_args(args))


def _upscale(img: Image.Image, scale: Optional[int]) -> Image.Image:
    if scale and scale > 1:
        return img.resize((img.width * scale, img.height * scale), Image.Resampling.LANCZOS)
    return img


def _paper(config: HalftoneConfig):
    return parse_hex_color(config.background, (255, 255, 255))


def _add_config_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--preset", choices=list_presets(), help="Named preset applied before --config and --extra.")
    p.add_argument("--config", help="Share token (base64) applied after the preset.")
    p.add_argument(
        "--extra",
        nargs="*",
        help=(
            "Extra k=v pairs using the flat setting keys, e.g. colorMode=quad quadSizes=14,9,5,2 "
            "dotSpacing=10 (a 'halftone.' prefix is accepted)."
        ),
    )


# =============== CLI ===============
def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Image / video / screen → halftone artwork")
    p.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v, -vv).")

    sub = p.add_subparsers(dest="cmd", required=True)

    lp = sub.add_parser("list", help="List generators and presets.")
    lp.set_defaults(func=cmd_list)

    rp = sub.add_parser("run", help="Render an image or a video.")
    rp.add_argument("--url", required=True, help="HTTP(S) URL, file:// URL, or local path.")
    rp.add_argument("--out", type=Path, required=True, help="Output file (png/jpg/webp, or mp4/mov/... for video).")
    rp.add_argument("--generator", choices=REGISTRY.names(), default="halftone", help="Generator to run.")
    rp.add_argument("--seed", type=int, default=None, help="RNG seed for jitter (optional).")
    rp.add_argument("--max-size", type=int, default=None, help="Downscale input longest side before processing.")
    rp.add_argument("--scale", type=int, default=1, help="Final upscale factor via Lanczos (1=off).")
    rp.add_argument("--ffmpeg-bin", type=str, default="ffmpeg", help="Path to ffmpeg executable or folder.")
    rp.add_argument("--video-fps", type=float, default=None, help="Resample video input to this FPS.")
    rp.add_argument("--crf", type=int, default=18, help="libx264 quality for video output.")
    _add_config_args(rp)
    rp.set_defaults(func=cmd_run)

    sp = sub.add_parser("stream", help="Live-capture the screen and halftone every frame.")
    sp.add_argument("--monitor", type=int, default=1, help="Monitor index (1-based per mss).")
    sp.add_argument("--region", type=str, default=None, help="Crop region as x,y,w,h (overrides monitor capture).")
    sp.add_argument("--fps", type=float, default=20.0, help="Target frames per second.")
    sp.add_argument("--dur", type=float, default=0.0, help="Duration in seconds (0 = until Ctrl+C).")
    sp.add_argument("--max-size", type=int, default=None, help="Downscale captured frames before processing.")
    sp.add_argument("--seed", type=int, default=None, help="RNG seed.")
    sp.add_argument("--preview", action="store_true", help="Show live preview window (requires OpenCV).")
    sp.add_argument("--out-video", type=Path, help="Optional path to save output video (mp4).")
    sp.add_argument("--video-fps", type=float, default=None, help="Video save FPS (default = capture FPS).")
    sp.add_argument("--ffmpeg-bin", type=str, default="ffmpeg", help="Path to ffmpeg executable or folder.")
    _add_config_args(sp)
    sp.set_defaults(func=cmd_stream)

    bp = sub.add_parser("bench", help="Micro-benchmark the halftone render.")
    bp.add_argument("--url", required=True)
    bp.add_argument("--runs", type=int, default=3)
    bp.add_argument("--max-size", type=int, default=None)
    _add_config_args(bp)
    bp.set_defaults(func=cmd_bench)

    ep = sub.add_parser("export-config", help="Print the share token (or JSON) for a configuration.")
    ep.add_argument("--json", action="store_true", help="Print the flat settings as JSON instead of a token.")
    _add_config_args(ep)
    ep.set_defaults(func=cmd_export_config)

    pp = sub.add_parser("palettes", help="Manage saved palettes.")
    pp.add_argument("--store", type=Path, default=None, help="Palette file (default ~/.dotter/palettes.json).")
    psub = pp.add_subparsers(dest="palettes_cmd", required=True)

    pl = psub.add_parser("list", help="List saved palettes.")
    pl.set_defaults(func=cmd_palettes_list)

    ps = psub.add_parser("save", help="Save the palette of a configuration.")
    ps.add_argument("--name", required=True)
    ps.add_argument("--id", default=None, help="Overwrite an existing palette id.")
    _add_config_args(ps)
    ps.set_defaults(func=cmd_palettes_save)

    pd = psub.add_parser("delete", help="Delete a saved palette.")
    pd.add_argument("id")
    pd.set_defaults(func=cmd_palettes_delete)

    return p


# =============== Commands ===============
def cmd_list(_args: argparse.Namespace) -> int:
    print("Available generators:", ", ".join(REGISTRY.names()) or "(none)")
    print("Presets:")
    for name in list_presets():
        print("  " + describe_preset(name))
    return 0


def _run_video(args: argparse.Namespace, config: HalftoneConfig) -> int:
    source = VideoSource(
        args.url, ffmpeg_bin=args.ffmpeg_bin,
        max_size=int(args.max_size) if args.max_size else None, target_fps=args.video_fps,
    ).open()
    fps = float(source.fps or 30.0)
    paper = _paper(config)
    writer: Optional[FFMpegWriter] = None
    t0 = last_log = perf_counter()

    def present(img: Image.Image) -> None:
        nonlocal writer, last_log
        out = _upscale(img, args.scale)
        if writer is None:
            args.out.parent.mkdir(parents=True, exist_ok=True)
            writer = FFMpegWriter(str(args.out), out.width, out.height, fps, crf=args.crf, ffmpeg_bin=args.ffmpeg_bin)
            print(f"Video: {out.width}x{out.height} @ {fps:.3f} fps → {args.out}")
        writer.write_bgr(pil_to_bgr(out, paper))
        now = perf_counter()
        if now - last_log >= 1.0:  # once per second
            elapsed = now - t0
            print(f"Processed {writer.frames} frames | {writer.frames / elapsed if elapsed > 0 else 0.0:.2f} fps (effective)")
            last_log = now

    loop = ContinuousRenderer(present, config, source=source, fps=None, seed=args.seed)
    try:
        n = loop.run()
        if writer is None:
            raise RuntimeError("No frames decoded from input video.")
    finally:
        if writer is not None:
            writer.close()
    print(f"Done. Wrote {n} frames to {args.out}")
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    try:
        extras = _extras_from_args(args)
        if is_video_path_or_url(args.url) or is_video_output_path(args.out):
            rc = _run_video(args, config_from_extras(extras))
            log.info("Saved video %s", args.out)
            return rc

        raw, ctype = FileFetcher().fetch(args.url)
        src_img = ImageLoader().load(raw, ctype, max_size=args.max_size)

        gen = REGISTRY.create(args.generator, seed=args.seed)
        log.info("Generator %s extras=%s", args.generator, {k: extras[k] for k in sorted(extras)})
        out_img = _upscale(gen.generate(src_img, **extras), args.scale)

        save_image(out_img, args.out, background=_paper(config_from_extras(extras)))
        log.info("Saved %s (%dx%d)", args.out, *out_img.size)
        return 0
    except Exception as e:
        log.exception("Failed: %s", e)
        return 1


def cmd_stream(args: argparse.Namespace) -> int:
    """Capture → halftone → preview (and optional video write)."""
    try:
        config = _config_from_args(args)
        source = ScreenSource(monitor=args.monitor, region=parse_region(args.region), max_size=args.max_size)
    except Exception as e:
        log.error("Stream setup failed: %s", e)
        return 1

    preview_name = "dotter stream"
    show = bool(args.preview and cv2 is not None)
    if args.preview and cv2 is None:
        log.warning("--preview needs OpenCV. Install with 'pip install opencv-python'")
    paper = _paper(config)
    writer: Optional[FFMpegWriter] = None

    def present(img: Image.Image) -> None:
        nonlocal writer
        if show:
            cv2.imshow(preview_name, pil_to_bgr(img, paper))
            cv2.waitKey(1)
        if args.out_video:
            if writer is None:
                writer = FFMpegWriter(str(args.out_video), img.width, img.height,
                                      float(args.video_fps or args.fps), crf=16, ffmpeg_bin=args.ffmpeg_bin)
            writer.write(img)

    loop = ContinuousRenderer(present, config, source=source, fps=max(1.0, float(args.fps)), seed=args.seed)
    log.info("Streaming %s @ %.1f FPS. Ctrl+C to stop.", source.describe(), loop.fps)
    try:
        with loop:
            loop.run(duration=args.dur if args.dur and args.dur > 0 else None)
        return 0
    except KeyboardInterrupt:
        return 0
    except Exception as e:
        log.exception("Streaming failed: %s", e)
        return 1
    finally:
        if writer is not None:
            writer.close()
        if show:
            cv2.destroyAllWindows()


def cmd_bench(args: argparse.Namespace) -> int:
    try:
        raw, ctype = FileFetcher().fetch(args.url)
        src_img = ImageLoader().load(raw, ctype, max_size=args.max_size)
        config = _config_from_args(args)

        times = []
        for _ in range(max(1, args.runs)):
            t0 = time.perf_counter()
            render(src_img, config)
            times.append(time.perf_counter() - t0)
        avg = sum(times) / len(times)
        print(
            f"halftone[{config.mode}] {src_img.width}x{src_img.height}: {len(times)} run(s), "
            f"avg {avg * 1000:.2f} ms, min {min(times) * 1000:.2f} ms, max {max(times) * 1000:.2f} ms"
        )
        return 0
    except Exception as e:
        log.exception("Bench failed: %s", e)
        return 1


def cmd_export_config(args: argparse.Namespace) -> int:
    try:
        config = _config_from_args(args)
    except KeyError as e:
        log.error("%s", e)
        return 1
    if args.json:
        print(json.dumps(config.to_dict(), indent=2))
    else:
        print(export_token(config))
    return 0


def cmd_palettes_list(args: argparse.Namespace) -> int:
    items = JsonPaletteStore(args.store).list()
    if not items:
        print("(no saved palettes)")
    for item in items:
        print(f"{item.id}  {item.mode:<6}  {item.name}")
    return 0


def cmd_palettes_save(args: argparse.Namespace) -> int:
    try:
        config = _config_from_args(args)
        item = JsonPaletteStore(args.store).save(args.name, config.palette, id=args.id)
    except Exception as e:
        log.exception("Saving palette failed: %s", e)
        return 1
    print(item.id)
    return 0


def cmd_palettes_delete(args: argparse.Namespace) -> int:
    if not JsonPaletteStore(args.store).delete(args.id):
        log.error("No saved palette with id %s", args.id)
        return 1
    return 0


# =============== Entry ===============
def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)
    return args.func(args)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
