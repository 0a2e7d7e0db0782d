from __future__ import annotations

import io
import json
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

TESTS_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = TESTS_DIR.parent
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from qrmerge import cli
from qrmerge.qrmerge import find_group_by_tag_and_id, parse_document

TEMPLATE = """
<svg xmlns="http://www.w3.org/2000/svg" width="400" height="400">
  <g id="qrcode">
    <rect x="10" y="20" width="100" height="100" fill="#fff"/>
  </g>
</svg>
""".strip()

NO_PLACEHOLDER = """
<svg xmlns="http://www.w3.org/2000/svg" width="400" height="400">
  <g id="header"/>
  <rect id="qrcode" width="10" height="10"/>
</svg>
""".strip()


class _StdoutCapture:
    def __init__(self) -> None:
        self._text = io.StringIO()

    def write(self, value: str) -> int:
        return self._text.write(value)

    def flush(self) -> None:
        pass

    def get_text(self) -> str:
        return self._text.getvalue()


class CLIAcceptanceTests(unittest.TestCase):
    def run_cli(self, argv: list[str]) -> tuple[int, str, str]:
        stdout = _StdoutCapture()
        stderr = io.StringIO()
        with mock.patch("sys.stdout", stdout), mock.patch("sys.stderr", stderr):
            code = cli.main(argv)
        return code, stdout.get_text(), stderr.getvalue()

    def _write_inputs(self, td: str, rows: str, template: str = TEMPLATE) -> tuple[Path, Path]:
        csv_path = Path(td) / "rows.csv"
        csv_path.write_text(rows, encoding="utf-8")
        template_path = Path(td) / "template.svg"
        template_path.write_text(template, encoding="utf-8")
        return csv_path, template_path

    def test_requires_subcommand(self) -> None:
        code, _out, err = self.run_cli([])
        self.assertEqual(code, 2)
        self.assertIn("E_ARGS", err)
        self.assertIn("subcommand", err)

    def test_unknown_option_is_usage_error(self) -> None:
        code, _out, err = self.run_cli(["batch", "--bogus"])
        self.assertEqual(code, 2)
        self.assertIn("E_ARGS", err)

    def test_batch_writes_one_file_per_row(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            csv_path, template_path = self._write_inputs(
                td, "url,GenQR,STK\nhttps://pay.example/1,,ACC123\n,https://pay.example/2,ACC456\n"
            )
            out_dir = Path(td) / "out"
            code, out, err = self.run_cli(
                ["batch", "-c", str(csv_path), "-o", str(out_dir), "-t", str(template_path), "-l", "none"]
            )
            self.assertEqual(code, 0, err)
            self.assertIn("Wrote 2 file(s)", out)
            self.assertEqual(sorted(p.name for p in out_dir.iterdir()), ["ACC123.svg", "ACC456.svg"])

            group = find_group_by_tag_and_id(parse_document((out_dir / "ACC123.svg").read_text(encoding="utf-8")))
            wrapper = group[1]
            self.assertEqual(
                (wrapper.get("x"), wrapper.get("y"), wrapper.get("width"), wrapper.get("height")),
                ("10", "20", "100", "100"),
            )
            self.assertEqual(wrapper.get("preserveAspectRatio"), "xMidYMid meet")
            self.assertNotIn("data:image/svg+xml", (out_dir / "ACC123.svg").read_text(encoding="utf-8"))

    def test_batch_with_bundled_template_and_logo(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            csv_path = Path(td) / "rows.csv"
            csv_path.write_text("url,STK\nhttps://pay.example/9,R9\n", encoding="utf-8")
            out_dir = Path(td) / "nested" / "out"
            code, _out, err = self.run_cli(["batch", "-c", str(csv_path), "-o", str(out_dir)])
            self.assertEqual(code, 0, err)
            text = (out_dir / "R9.svg").read_text(encoding="utf-8")
            self.assertIn("data:image/svg+xml;base64,", text)
            self.assertIn('x="642.5"', text)

    def test_batch_missing_placeholder_aborts_before_records(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            csv_path, template_path = self._write_inputs(
                td, "url,STK\nhttps://pay.example/1,A\n", template=NO_PLACEHOLDER
            )
            out_dir = Path(td) / "out"
            code, _out, err = self.run_cli(
                ["batch", "-c", str(csv_path), "-o", str(out_dir), "-t", str(template_path)]
            )
            self.assertEqual(code, 3)
            self.assertIn("E_PLACEHOLDER_NOT_FOUND", err)
            self.assertIn("header", err)
            self.assertFalse(out_dir.exists())

    def test_json_error_format(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            csv_path, template_path = self._write_inputs(
                td, "url,STK\nhttps://pay.example/1,A\n", template=NO_PLACEHOLDER
            )
            code, _out, err = self.run_cli(
                [
                    "--error-format",
                    "json",
                    "batch",
                    "-c",
                    str(csv_path),
                    "-o",
                    str(Path(td) / "out"),
                    "-t",
                    str(template_path),
                ]
            )
            self.assertEqual(code, 3)
            payload = json.loads(err.strip().splitlines()[-1])
            self.assertFalse(payload["ok"])
            self.assertEqual(payload["code"], "E_PLACEHOLDER_NOT_FOUND")
            self.assertFalse(payload["retryable"])

    def test_batch_reports_failed_rows_and_keeps_going(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            csv_path, template_path = self._write_inputs(
                td, "url,STK\nhttps://pay.example/1,A\n,B\nhttps://pay.example/3,C\n"
            )
            out_dir = Path(td) / "out"
            code, out, err = self.run_cli(
                ["batch", "-c", str(csv_path), "-o", str(out_dir), "-t", str(template_path), "-l", "none"]
            )
            self.assertEqual(code, 5)
            self.assertIn("E_RECORDS_FAILED", err)
            self.assertIn("rows 2", err)
            self.assertIn("Wrote 2 file(s)", out)
            self.assertEqual(sorted(p.name for p in out_dir.iterdir()), ["A.svg", "C.svg"])

    def test_batch_missing_csv(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            code, _out, err = self.run_cli(["batch", "-c", str(Path(td) / "nope.csv"), "-o", td])
            self.assertEqual(code, 2)
            self.assertIn("E_IO_READ", err)

    def test_malformed_template(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            csv_path, template_path = self._write_inputs(td, "url,STK\na,A\n", template="<svg><g></svg>")
            code, _out, err = self.run_cli(
                ["batch", "-c", str(csv_path), "-o", str(Path(td) / "out"), "-t", str(template_path)]
            )
            self.assertEqual(code, 2)
            self.assertIn("E_PARSE_XML", err)

    def test_unreadable_logo_falls_back_to_no_logo(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            csv_path, template_path = self._write_inputs(td, "url,STK\nhttps://pay.example/1,A\n")
            code, _out, err = self.run_cli(
                [
                    "batch",
                    "-c",
                    str(csv_path),
                    "-o",
                    str(Path(td) / "out"),
                    "-t",
                    str(template_path),
                    "-l",
                    str(Path(td) / "missing-logo.svg"),
                ]
            )
            self.assertEqual(code, 0, err)
            self.assertIn("Could not load logo", err)
            self.assertNotIn("data:image/svg+xml", (Path(td) / "out" / "A.svg").read_text(encoding="utf-8"))

    def test_merge_to_stdout_and_file(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            template_path = Path(td) / "template.svg"
            template_path.write_text(TEMPLATE, encoding="utf-8")
            code, out, err = self.run_cli(["merge", "https://pay.example/1", "-t", str(template_path), "--stdout"])
            self.assertEqual(code, 0, err)
            self.assertIn('id="qrcode"', out)
            self.assertIn('preserveAspectRatio="xMidYMid meet"', out)

            target = Path(td) / "single.svg"
            code, out, err = self.run_cli(["merge", "https://pay.example/1", "-t", str(template_path), "-o", str(target)])
            self.assertEqual(code, 0, err)
            self.assertIn("Wrote", out)
            self.assertTrue(target.exists())

    def test_merge_stdout_and_output_conflict(self) -> None:
        code, _out, err = self.run_cli(["merge", "data", "--stdout", "-o", "x.svg"])
        self.assertEqual(code, 2)
        self.assertIn("mutually exclusive", err)

    def test_merge_oversized_payload(self) -> None:
        code, _out, err = self.run_cli(["merge", "x" * 5000, "--stdout", "-l", "none"])
        self.assertEqual(code, 3)
        self.assertIn("E_GENERATOR", err)

    def test_inspect_bundled_template(self) -> None:
        code, out, err = self.run_cli(["--log-level", "WARNING", "inspect"])
        self.assertEqual(code, 0, err)
        payload = json.loads(out)
        self.assertEqual(
            payload,
            {
                "group_id": "qrcode",
                "has_rect": True,
                "x": "642.5",
                "y": "1091.5",
                "width": "1299",
                "height": "1299",
            },
        )

    def test_unknown_log_level(self) -> None:
        code, _out, err = self.run_cli(["--log-level", "LOUD", "inspect"])
        self.assertEqual(code, 2)
        self.assertIn("unknown log level", err)


if __name__ == "__main__":
    unittest.main()
