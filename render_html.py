import argparse
import json
import os
import sys
import time
from pathlib import Path

from converter import HtmlToPngConverter
from css_cache import CssFetchCache
from engines import ENGINE_ALIASES, ENGINE_PRIORITY, EngineDetector
from errors import ConversionError
from request_context import RequestContext
from sanitize import sanitize_html

DEFAULT_OUTPUT_DIR = "assets/media/html2png"


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Render HTML fragments to a transparent PNG without going through the HTTP service."
    )
    # Blocks are concatenated in the order given; -i and --html may be mixed.
    parser.add_argument(
        "-i",
        "--input_html",
        action="append",
        default=[],
        help="HTML file holding one block (repeatable, '-' reads stdin).",
    )
    parser.add_argument(
        "--html",
        action="append",
        default=[],
        help="Inline HTML block (repeatable).",
    )
    parser.add_argument("--css-url", dest="css_url", default=None, help="Stylesheet URL (http or https).")
    parser.add_argument(
        "--engine",
        default=None,
        help=f"Force one engine ({', '.join(ENGINE_PRIORITY)} or {', '.join(sorted(ENGINE_ALIASES))}).",
    )
    parser.add_argument(
        "--output-dir",
        dest="output_dir",
        default=DEFAULT_OUTPUT_DIR,
        help=f"Directory for rendered PNGs (default: {DEFAULT_OUTPUT_DIR}).",
    )
    parser.add_argument(
        "--css-cache-dir",
        dest="css_cache_dir",
        default=None,
        help="Directory for cached stylesheets (default: <output-dir>/css_cache).",
    )
    parser.add_argument("--timeout", type=float, default=60.0, help="Overall deadline in seconds (default: 60).")
    parser.add_argument("--width", type=int, default=800, help="Page width for wkhtmltoimage (default: 800).")
    parser.add_argument(
        "--no-sanitize",
        dest="sanitize",
        action="store_false",
        help="Skip stripping scripts and event handlers from the input.",
    )
    return parser.parse_args(argv)


def read_blocks(args):
    blocks = []
    for source in args.input_html:
        if source == "-":
            blocks.append(sys.stdin.read())
        else:
            blocks.append(Path(source).read_text(encoding="utf-8"))
    blocks.extend(args.html)
    return blocks


def main(argv=None):
    args = parse_args(argv)
    blocks = read_blocks(args)
    if not blocks:
        print(json.dumps({"success": False, "message": "Provide at least one block with -i or --html"}))
        return 2
    if args.sanitize:
        blocks = [sanitize_html(block) for block in blocks]

    output_dir = Path(os.path.abspath(args.output_dir))
    css_cache_dir = Path(args.css_cache_dir) if args.css_cache_dir else output_dir / "css_cache"
    converter = HtmlToPngConverter(
        output_dir,
        CssFetchCache(css_cache_dir),
        EngineDetector(),
        {"width": args.width, "timeout": args.timeout},
    )

    start_time = time.perf_counter()
    try:
        result = converter.convert(blocks, css_url=args.css_url, engine=args.engine, ctx=RequestContext(args.timeout))
    except ConversionError as exc:
        print(json.dumps({"success": False, "error": exc.to_dict()}, indent=2))
        return 1

    payload = {
        "success": True,
        "elapsed_seconds": round(time.perf_counter() - start_time, 3),
        "data": result.model_dump(),
    }
    print(json.dumps(payload, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
