#!/usr/bin/env python3
"""Make rendered PNGs transparent and report their dimensions."""

import argparse
import os
from typing import Tuple

import numpy as np
from PIL import Image

PNG_COMPRESS_LEVEL = 6
DEFAULT_WHITE_TOLERANCE = 8


def ensure_folder(path: str) -> None:
    folder = os.path.dirname(path)
    if folder and not os.path.exists(folder):
        os.makedirs(folder, exist_ok=True)


def has_transparency(image: Image.Image) -> bool:
    if image.mode != "RGBA":
        return False
    alpha = np.array(image.getchannel("A"), dtype=np.uint8)
    return bool((alpha < 255).any())


def knock_out_background(
    image: Image.Image,
    color: Tuple[int, int, int] = (255, 255, 255),
    tolerance: int = DEFAULT_WHITE_TOLERANCE,
) -> Image.Image:
    """Turn pixels within ``tolerance`` of ``color`` fully transparent."""
    rgba = np.array(image.convert("RGBA"), dtype=np.uint8)

    rgb = rgba[..., :3].astype(np.int16)
    diff = rgb - np.array(color, dtype=np.int16)
    mask = (np.abs(diff) <= tolerance).all(axis=-1)

    rgba[mask, 3] = 0
    return Image.fromarray(rgba)


def trim_transparent(image: Image.Image, padding: int = 0) -> Image.Image:
    rgba = image.convert("RGBA")
    bbox = rgba.getchannel("A").getbbox()
    if bbox is None:
        return rgba
    left, top, right, bottom = bbox
    cropped = rgba.crop((left, top, right, bottom))
    if padding <= 0:
        return cropped
    padded = Image.new("RGBA", (cropped.width + padding * 2, cropped.height + padding * 2), (255, 255, 255, 0))
    padded.paste(cropped, (padding, padding))
    return padded


def save_png(image: Image.Image, path: str, compress_level: int = PNG_COMPRESS_LEVEL) -> None:
    ensure_folder(path)
    image.save(path, format="PNG", compress_level=compress_level)


def ensure_transparent_png(path: str, tolerance: int = DEFAULT_WHITE_TOLERANCE) -> bool:
    """Rewrite ``path`` as RGBA, knocking out an opaque white background.

    Returns True when the background had to be knocked out.
    """
    with Image.open(path) as render:
        render.load()
        rgba = render.convert("RGBA")
    knocked_out = False
    if not has_transparency(rgba):
        rgba = knock_out_background(rgba, tolerance=tolerance)
        knocked_out = True
    save_png(rgba, path)
    return knocked_out


def describe_png(path: str) -> Tuple[int, int, str]:
    try:
        with Image.open(path) as image:
            width, height = image.size
            mime = Image.MIME.get(image.format or "", "application/octet-stream")
            image.verify()
    except (OSError, SyntaxError) as exc:
        raise ValueError(f"{path} is not a valid image: {exc}") from exc
    return width, height, mime


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Make the background of a rendered PNG transparent.")
    parser.add_argument("--input", required=True, help="PNG render to process.")
    parser.add_argument(
        "--output",
        default=None,
        help="Destination path (defaults to overwriting the input).",
    )
    parser.add_argument(
        "--white_tolerance",
        type=int,
        default=DEFAULT_WHITE_TOLERANCE,
        help="How close a pixel must be to pure white before it becomes transparent (default: 8).",
    )
    parser.add_argument("--trim", type=int, default=None, help="Trim to content, keeping this much padding.")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    output_path = os.path.abspath(args.output or args.input)

    with Image.open(args.input) as render:
        render.load()
        result = knock_out_background(render, tolerance=args.white_tolerance)
    if args.trim is not None:
        result = trim_transparent(result, padding=args.trim)
    save_png(result, output_path)
    width, height, _ = describe_png(output_path)
    print(f"Saved transparent PNG ({width}x{height}) to {output_path}")


if __name__ == "__main__":
    main()
