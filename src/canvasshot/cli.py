"""Command-line interface for exporting JSON Canvas files to PNG."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import re
import sys
import tempfile
import time
import traceback
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Tuple

from .bounds import BoundingBoxCalculator
from .config import ExportConfig
from .errors import (
    CanvasExportError,
    CaptureFailedError,
    DegenerateGeometryError,
    InvalidTargetError,
    RenderTimeoutError,
)
from .export import ExportOrchestrator, ExportResult, capture_canvas
from .jsoncanvas import THEME_BACKGROUNDS, HeadlessRegistry, parse_canvas

TEMP_PREFIX = "canvas_screenshot_"
TEMP_MAX_AGE_SECONDS = 60 * 60


@dataclass
class CliError(Exception):
    code: str
    message: str
    hint: Optional[str] = None
    exit_code: int = 1
    file: Optional[str] = None
    retryable: bool = True


class UsageError(Exception):
    pass


class FriendlyArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # pragma: no cover - argparse callback
        raise UsageError(message)


def _surface_size(value: str) -> Tuple[int, int]:
    match = re.fullmatch(r"\s*(\d+)\s*[xX]\s*(\d+)\s*", value)
    if not match or int(match.group(1)) <= 0 or int(match.group(2)) <= 0:
        raise argparse.ArgumentTypeError(f"expected WIDTHxHEIGHT with positive integers, got {value!r}")
    return int(match.group(1)), int(match.group(2))


def _build_parser() -> argparse.ArgumentParser:
    parser = FriendlyArgumentParser(
        prog="canvasshot",
        description="Export JSON Canvas documents to PNG, framed to fit all content.",
    )
    parser.add_argument("--error-format", choices=["text", "json"], default="text")
    parser.add_argument("--debug", action="store_true")

    subparsers = parser.add_subparsers(dest="command")

    render_parser = subparsers.add_parser("render", help="Render a .canvas file to PNG")
    render_parser.add_argument("input", help="Input .canvas file")
    outputs = render_parser.add_mutually_exclusive_group()
    outputs.add_argument("-o", "--output", help="Output .png path")
    outputs.add_argument("--stdout", action="store_true", help="Write PNG bytes to stdout")
    outputs.add_argument(
        "--temp",
        action="store_true",
        help="Write to the system temp dir and print the path",
    )
    outputs.add_argument(
        "--payload",
        action="store_true",
        help='Print {"image": <base64>, "mimeType": "image/png"} JSON to stdout',
    )
    render_parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Milliseconds to let the canvas settle before framing (default 1000)",
    )
    render_parser.add_argument("--surface", type=_surface_size, default=(1200, 800), metavar="WxH")
    render_parser.add_argument("--theme", choices=sorted(THEME_BACKGROUNDS), default="light")
    render_parser.add_argument("--background", help="Override the canvas background color")

    bounds_parser = subparsers.add_parser("bounds", help="Print the content bounding box as JSON")
    bounds_parser.add_argument("input", help="Input .canvas file")

    return parser


def _read_canvas_path(path: str) -> Path:
    input_path = Path(path)
    if not input_path.is_file():
        raise CliError(
            "E_IO_READ",
            f"input file not found: {input_path}",
            exit_code=2,
            file=str(input_path),
        )
    return input_path


def _write_bytes(path: Path, content: bytes) -> None:
    try:
        path.write_bytes(content)
    except OSError as exc:
        raise CliError(
            "E_IO_WRITE",
            f"failed to write output file: {path}",
            hint=str(exc),
            exit_code=4,
            file=str(path),
        )


def purge_stale_screenshots(
    temp_dir: Path, *, max_age: float = TEMP_MAX_AGE_SECONDS, now: Optional[float] = None
) -> int:
    """Delete ``canvas_screenshot_*`` files older than ``max_age`` seconds."""
    cutoff = (time.time() if now is None else now) - max_age
    removed = 0
    try:
        candidates = [p for p in temp_dir.iterdir() if p.name.startswith(TEMP_PREFIX)]
    except OSError:
        return 0
    for candidate in candidates:
        try:
            if candidate.stat().st_mtime < cutoff:
                candidate.unlink()
                removed += 1
        except OSError:
            continue
    return removed


def save_temp_screenshot(name: str, content: bytes, *, temp_dir: Optional[Path] = None) -> Path:
    directory = Path(temp_dir) if temp_dir is not None else Path(tempfile.gettempdir())
    purge_stale_screenshots(directory)
    sanitized = re.sub(r"[^a-zA-Z0-9.-]", "_", name)
    target = directory / f"{TEMP_PREFIX}{sanitized}.png"
    _write_bytes(target, content)
    return target


def _error_from_exception(exc: Exception) -> CliError:
    if isinstance(exc, CliError):
        return exc
    if isinstance(exc, InvalidTargetError):
        return CliError(exc.code, str(exc), hint="Check that the canvas has at least one node.", exit_code=2)
    if isinstance(exc, DegenerateGeometryError):
        return CliError(
            exc.code,
            str(exc),
            hint="Give nodes a non-zero width and height.",
            exit_code=3,
        )
    if isinstance(exc, RenderTimeoutError):
        return CliError(
            exc.code,
            str(exc),
            hint="Nodes still loading: " + ", ".join(exc.unready_node_ids),
            exit_code=5,
        )
    if isinstance(exc, CaptureFailedError):
        return CliError(exc.code, str(exc), hint="Re-run with --debug to see traceback.", exit_code=6)
    if isinstance(exc, CanvasExportError):
        return CliError(exc.code, str(exc), exit_code=1)
    if isinstance(exc, ValueError):
        return CliError(
            "E_PARSE_CANVAS",
            str(exc),
            hint="Ensure input is a valid JSON Canvas document.",
            exit_code=2,
        )
    return CliError(
        "E_INTERNAL",
        str(exc) or exc.__class__.__name__,
        hint="Re-run with --debug to see traceback.",
        exit_code=1,
        retryable=False,
    )


def _emit_error(err: CliError, *, error_format: str) -> None:
    if error_format == "json":
        payload = {
            "ok": False,
            "code": err.code,
            "message": err.message,
            "file": err.file,
            "hint": err.hint,
            "retryable": err.retryable,
        }
        sys.stderr.write(json.dumps(payload) + "\n")
        return

    sys.stderr.write(f"error[{err.code}]: {err.message}\n")
    if err.hint:
        sys.stderr.write(f"hint: {err.hint}\n")


def _handle_render(args: argparse.Namespace) -> int:
    if args.timeout is not None and args.timeout < 0:
        raise CliError(
            "E_ARGS",
            "--timeout must be >= 0",
            hint="Use a wait in milliseconds like 1000.",
            exit_code=2,
        )
    try:
        config = ExportConfig.from_env()
    except ValueError as exc:
        raise CliError(
            "E_CONFIG",
            str(exc),
            hint="Fix or unset the CANVASSHOT_* environment variables.",
            exit_code=2,
        ) from exc
    input_path = _read_canvas_path(args.input)
    registry = HeadlessRegistry(
        input_path.parent,
        surface_size=args.surface,
        theme=args.theme,
        background=args.background,
    )
    orchestrator = ExportOrchestrator(config)
    result: ExportResult = asyncio.run(
        capture_canvas(registry, input_path.name, args.timeout, orchestrator=orchestrator)
    )

    if args.stdout:
        sys.stdout.buffer.write(result.image_bytes)
        return 0
    if args.payload:
        sys.stdout.write(json.dumps(result.to_payload()) + "\n")
        return 0
    if args.temp:
        target = save_temp_screenshot(args.input, result.image_bytes)
        print(f"Screenshot saved to: {target}")
        return 0

    output_path = Path(args.output) if args.output else input_path.with_suffix(".png")
    _write_bytes(output_path, result.image_bytes)
    print(f"Wrote {output_path}")
    return 0


def _handle_bounds(args: argparse.Namespace) -> int:
    input_path = _read_canvas_path(args.input)
    document = parse_canvas(
        input_path.read_text(encoding="utf-8"), input_path.name, base_dir=input_path.parent
    )
    box = BoundingBoxCalculator().calculate(document.nodes.values(), document.edges.values())
    payload = {
        "nodes": len(document.nodes),
        "edges": len(document.edges),
        "bbox": None
        if box.is_degenerate
        else {"minX": box.min_x, "minY": box.min_y, "maxX": box.max_x, "maxY": box.max_y},
    }
    sys.stdout.write(json.dumps(payload) + "\n")
    return 0


def main(argv: Optional[Iterable[str]] = None) -> int:
    raw_argv = list(argv) if argv is not None else sys.argv[1:]
    parser = _build_parser()

    if not raw_argv:
        err = CliError(
            "E_ARGS",
            "missing subcommand",
            hint="Use one of: render, bounds.",
            exit_code=2,
        )
        _emit_error(err, error_format="text")
        return err.exit_code

    debug_enabled = "--debug" in raw_argv or os.getenv("CANVASSHOT_DEBUG") == "1"
    logging.basicConfig(
        level=logging.DEBUG if debug_enabled else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    error_format = "text"
    if "--error-format" in raw_argv:
        idx = raw_argv.index("--error-format")
        if idx + 1 < len(raw_argv):
            error_format = raw_argv[idx + 1]

    try:
        args = parser.parse_args(raw_argv)
        error_format = args.error_format

        if args.command == "render":
            return _handle_render(args)
        if args.command == "bounds":
            return _handle_bounds(args)

        raise CliError(
            "E_ARGS",
            "missing subcommand",
            hint="Use one of: render, bounds.",
            exit_code=2,
        )
    except UsageError as exc:
        err = CliError(
            "E_ARGS",
            str(exc),
            hint="Use subcommands: render, bounds.",
            exit_code=2,
        )
        _emit_error(err, error_format=error_format)
        return err.exit_code
    except Exception as exc:  # pragma: no cover - exercised in integration tests
        err = _error_from_exception(exc)
        _emit_error(err, error_format=error_format)
        if debug_enabled:
            traceback.print_exc(file=sys.stderr)
        return err.exit_code


if __name__ == "__main__":
    raise SystemExit(main())
