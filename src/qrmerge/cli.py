"""Command-line interface for batch QR compositing into SVG templates."""
from __future__ import annotations

import argparse
from dataclasses import dataclass
import json
import logging
import os
import sys
import traceback
from pathlib import Path
from typing import Iterable, Optional

from .batch import RecordFields, read_records, run_batch, write_atomic
from .generator import generate_qr_svg, load_logo
from .qrmerge import (
    GeneratorFailure,
    MalformedMarkup,
    MalformedQRGraphic,
    PlaceholderNotFound,
    QRMergeError,
    Template,
    format_number,
)
from .resources import load_default_logo, load_default_template

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

log = logging.getLogger("qrmerge.cli")


@dataclass
class CliError(Exception):
    code: str
    message: str
    hint: Optional[str] = None
    exit_code: int = 1
    file: Optional[str] = None
    line: Optional[int] = None
    column: Optional[int] = None
    retryable: bool = True


class UsageError(Exception):
    pass


class FriendlyArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # pragma: no cover - argparse callback
        raise UsageError(message)


def _build_parser() -> argparse.ArgumentParser:
    parser = FriendlyArgumentParser(
        prog="qrmerge",
        description="Generate QR codes and composite them into an SVG template.",
    )
    parser.add_argument("--error-format", choices=["text", "json"], default="text")
    parser.add_argument("--debug", action="store_true")
    parser.add_argument(
        "--log-level",
        default=os.getenv("QRMERGE_LOG_LEVEL", "INFO"),
        help="Logging level (default: $QRMERGE_LOG_LEVEL or INFO)",
    )

    subparsers = parser.add_subparsers(dest="command")

    batch_parser = subparsers.add_parser("batch", help="Write one SVG per CSV row")
    batch_parser.add_argument("-c", "--csv", required=True, help="Path to CSV file")
    batch_parser.add_argument("-o", "--output", required=True, help="Output directory")
    _add_template_options(batch_parser)
    batch_parser.add_argument("--payload-field", default="url", help="Column holding the QR data")
    batch_parser.add_argument(
        "--fallback-field",
        default="GenQR",
        help="Column used when the payload column is empty",
    )
    batch_parser.add_argument("--id-field", default="STK", help="Column naming the output file")

    merge_parser = subparsers.add_parser("merge", help="Composite a single QR code")
    merge_parser.add_argument("data", help="QR payload")
    _add_template_options(merge_parser)
    merge_parser.add_argument("--stdout", action="store_true", help="Write SVG to stdout")
    merge_parser.add_argument("-o", "--output", help="Output .svg path")

    inspect_parser = subparsers.add_parser("inspect", help="Print the placeholder geometry")
    inspect_parser.add_argument(
        "-t", "--template", help="Path to SVG template (default: bundled template)"
    )
    inspect_parser.add_argument("--group-id", default="qrcode", help="Placeholder group id")

    return parser


def _add_template_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-t", "--template", help="Path to SVG template (default: bundled template)")
    parser.add_argument(
        "-l",
        "--logo",
        help='Logo SVG path, or "none" for no logo (default: bundled logo)',
    )
    parser.add_argument("--group-id", default="qrcode", help="Placeholder group id")


def _read_file(path: Path, code: str, exit_code: int) -> str:
    if not path.exists():
        raise CliError(code, f"input file not found: {path}", exit_code=exit_code, file=str(path))
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        raise CliError(
            code,
            f"failed to read input file: {path}",
            hint=str(exc),
            exit_code=exit_code,
            file=str(path),
        )


def _load_template(path: Optional[str], group_id: str) -> Template:
    if path is None:
        return Template.from_text(load_default_template(), group_id)
    template_path = Path(path)
    text = _read_file(template_path, "E_TEMPLATE", 3)
    try:
        return Template.from_text(text, group_id)
    except MalformedMarkup as exc:
        raise CliError(
            "E_PARSE_XML",
            f"failed to parse template {template_path}: {exc}",
            hint="Ensure the template is well-formed SVG.",
            exit_code=2,
            file=str(template_path),
            line=exc.line,
            column=exc.column,
        )


def _load_logo(path: Optional[str]) -> Optional[str]:
    if path is None:
        return load_default_logo()
    if path == "none":
        return None
    try:
        return load_logo(Path(path))
    except (OSError, MalformedMarkup) as exc:
        log.warning("Could not load logo from %s: %s", path, exc)
        return None


def _write_text(path: Path, content: str) -> None:
    try:
        write_atomic(path, content)
    except OSError as exc:
        raise CliError(
            "E_IO_WRITE",
            f"failed to write output file: {path}",
            hint=str(exc),
            exit_code=4,
            file=str(path),
        )


def _error_from_exception(exc: Exception) -> CliError:
    if isinstance(exc, CliError):
        return exc
    if isinstance(exc, PlaceholderNotFound):
        hint = "Add <g id=\"%s\"> to the template" % exc.group_id
        if exc.available_ids:
            hint += f"; ids present: {', '.join(exc.available_ids)}"
        return CliError(
            exc.code,
            str(exc),
            hint=hint + ".",
            exit_code=3,
            retryable=False,
        )
    if isinstance(exc, MalformedMarkup):
        return CliError(
            exc.code,
            str(exc),
            hint="Ensure input is well-formed XML and escape &, <, > in text.",
            exit_code=2,
            line=exc.line,
            column=exc.column,
        )
    if isinstance(exc, (GeneratorFailure, MalformedQRGraphic)):
        return CliError(
            exc.code,
            str(exc),
            hint="Check the QR payload; very long payloads may not fit a QR code.",
            exit_code=3,
        )
    if isinstance(exc, QRMergeError):
        return CliError(exc.code, str(exc), exit_code=3)
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
            "line": err.line,
            "column": err.column,
            "hint": err.hint,
            "retryable": err.retryable,
        }
        sys.stderr.write(json.dumps(payload) + "\n")
        return

    sys.stderr.write(f"error[{err.code}]: {err.message}\n")
    if err.hint:
        sys.stderr.write(f"hint: {err.hint}\n")


def _configure_logging(level_name: str) -> None:
    level = logging.getLevelName(level_name.upper())
    if not isinstance(level, int):
        raise CliError(
            "E_ARGS",
            f"unknown log level: {level_name}",
            hint="Use DEBUG, INFO, WARNING or ERROR.",
            exit_code=2,
        )
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr, force=True)


def _handle_batch(args: argparse.Namespace) -> int:
    csv_path = Path(args.csv)
    if not csv_path.exists():
        raise CliError("E_IO_READ", f"input file not found: {csv_path}", exit_code=2, file=str(csv_path))

    # Validate the template before touching any record.
    template = _load_template(args.template, args.group_id)
    logo_svg = _load_logo(args.logo)
    fields = RecordFields(
        payload=args.payload_field,
        fallback=args.fallback_field or None,
        identifier=args.id_field,
    )

    output_dir = Path(args.output)
    try:
        output_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise CliError(
            "E_IO_WRITE",
            f"failed to create output directory: {output_dir}",
            hint=str(exc),
            exit_code=4,
            file=str(output_dir),
        )

    try:
        with read_records(csv_path) as records:
            summary = run_batch(
                template,
                records,
                output_dir,
                fields=fields,
                logo_svg=logo_svg,
            )
    except (OSError, UnicodeDecodeError) as exc:
        raise CliError(
            "E_IO_READ",
            f"failed to read CSV file: {csv_path}",
            hint=str(exc),
            exit_code=2,
            file=str(csv_path),
        )

    print(f"Wrote {len(summary.succeeded)} file(s) to {output_dir}")
    if summary.failed:
        failed_rows = ", ".join(str(r.index) for r in summary.failed)
        raise CliError(
            "E_RECORDS_FAILED",
            f"{len(summary.failed)} record(s) failed (rows {failed_rows})",
            hint="See the log above for the failing records.",
            exit_code=5,
        )
    return 0


def _handle_merge(args: argparse.Namespace) -> int:
    if args.stdout and args.output:
        raise CliError(
            "E_ARGS",
            "--stdout and --output are mutually exclusive",
            hint="Choose either --stdout or --output.",
            exit_code=2,
        )

    template = _load_template(args.template, args.group_id)
    logo_svg = _load_logo(args.logo)
    svg_text = template.merge(generate_qr_svg(args.data, logo_svg=logo_svg))

    if args.stdout or not args.output:
        sys.stdout.write(svg_text)
        if not svg_text.endswith("\n"):
            sys.stdout.write("\n")
        return 0

    output_path = Path(args.output)
    _write_text(output_path, svg_text)
    print(f"Wrote {output_path}")
    return 0


def _handle_inspect(args: argparse.Namespace) -> int:
    template = _load_template(args.template, args.group_id)
    geometry = template.geometry
    payload = {
        "group_id": template.group_id,
        "has_rect": template.has_layout_rect,
        "x": format_number(geometry.x),
        "y": format_number(geometry.y),
        "width": format_number(geometry.width),
        "height": format_number(geometry.height),
    }
    print(json.dumps(payload))
    return 0


def main(argv: Optional[Iterable[str]] = None) -> int:
    raw_argv = list(argv) if argv is not None else sys.argv[1:]
    parser = _build_parser()

    if not raw_argv:
        err = CliError(
            "E_ARGS",
            "missing subcommand",
            hint="Use one of: batch, merge, inspect.",
            exit_code=2,
        )
        _emit_error(err, error_format="text")
        return err.exit_code

    debug_enabled = "--debug" in raw_argv or os.getenv("QRMERGE_DEBUG") == "1"
    error_format = "text"
    if "--error-format" in raw_argv:
        idx = raw_argv.index("--error-format")
        if idx + 1 < len(raw_argv):
            error_format = raw_argv[idx + 1]

    try:
        args = parser.parse_args(raw_argv)
        error_format = args.error_format
        _configure_logging("DEBUG" if args.debug else args.log_level)

        if args.command == "batch":
            return _handle_batch(args)
        if args.command == "merge":
            return _handle_merge(args)
        if args.command == "inspect":
            return _handle_inspect(args)

        raise CliError(
            "E_ARGS",
            "missing subcommand",
            hint="Use one of: batch, merge, inspect.",
            exit_code=2,
        )
    except UsageError as exc:
        err = CliError(
            "E_ARGS",
            str(exc),
            hint="Use subcommands: batch, merge, inspect.",
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
