"""CSV-driven batch compositing: one output SVG per record."""
from __future__ import annotations

import csv
from dataclasses import dataclass, field
import logging
import os
from pathlib import Path
import tempfile
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from .generator import generate_qr_svg
from .qrmerge import (
    GeneratorFailure,
    MalformedMarkup,
    MalformedQRGraphic,
    QRMergeError,
    Template,
)

log = logging.getLogger("qrmerge.batch")

GenerateFn = Callable[..., str]


class MissingFieldError(QRMergeError):
    """Raised when a record lacks its payload or identifier field."""

    code = "E_RECORD_FIELD"


@dataclass(frozen=True)
class RecordFields:
    payload: str = "url"
    fallback: Optional[str] = "GenQR"
    identifier: str = "STK"

    def payload_of(self, record: Mapping[str, Optional[str]]) -> str:
        value = record.get(self.payload)
        if not value and self.fallback:
            value = record.get(self.fallback)
        if not value:
            names = self.payload if not self.fallback else f"{self.payload}/{self.fallback}"
            raise MissingFieldError(f"record has no payload in field {names}")
        return value

    def identifier_of(self, record: Mapping[str, Optional[str]]) -> str:
        value = record.get(self.identifier)
        if not value:
            raise MissingFieldError(f"record has no identifier in field {self.identifier}")
        return value


@dataclass
class RecordResult:
    index: int
    record: Dict[str, Optional[str]]
    identifier: Optional[str] = None
    output_path: Optional[Path] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class BatchSummary:
    results: List[RecordResult] = field(default_factory=list)

    @property
    def succeeded(self) -> List[RecordResult]:
        return [r for r in self.results if r.ok]

    @property
    def failed(self) -> List[RecordResult]:
        return [r for r in self.results if not r.ok]


class MalformedRecord(QRMergeError):
    """Raised for a CSV row the reader cannot parse."""

    code = "E_RECORD_PARSE"


class CsvRecords:
    """Iterator over CSV rows as dicts keyed by the header row.

    A row that fails to parse raises :class:`MalformedRecord` from ``__next__``;
    iteration can continue with the following row.
    """

    def __init__(self, path: Path) -> None:
        self._fh = Path(path).open("r", encoding="utf-8-sig", newline="")
        self._reader = csv.DictReader(self._fh)

    def __iter__(self) -> "CsvRecords":
        return self

    def __next__(self) -> Dict[str, Optional[str]]:
        if self._fh.closed:
            raise StopIteration
        try:
            return next(self._reader)
        except StopIteration:
            self.close()
            raise
        except csv.Error as exc:
            raise MalformedRecord(f"line {self._reader.line_num}: {exc}") from exc

    def close(self) -> None:
        self._fh.close()

    def __enter__(self) -> "CsvRecords":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def read_records(path: Path) -> CsvRecords:
    return CsvRecords(path)


def write_atomic(path: Path, content: str) -> None:
    """Write via a temp file in the same directory, then rename over ``path``."""
    fd, tmp_name = tempfile.mkstemp(prefix=".tmp-", suffix=".svg", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(content)
        os.replace(tmp_name, path)
    except ValueError as exc:
        # e.g. an identifier with an embedded NUL byte
        _discard(tmp_name)
        raise OSError(f"cannot write {str(path)!r}: {exc}") from exc
    except BaseException:
        _discard(tmp_name)
        raise


def _discard(tmp_name: str) -> None:
    try:
        os.unlink(tmp_name)
    except FileNotFoundError:
        pass


def process_record(
    template: Template,
    record: Mapping[str, Optional[str]],
    output_dir: Path,
    *,
    fields: RecordFields,
    logo_svg: Optional[str] = None,
    generate: GenerateFn = generate_qr_svg,
) -> Path:
    identifier = fields.identifier_of(record)
    payload = fields.payload_of(record)
    log.info("Processing QR data for %s: %s", fields.identifier, identifier)
    try:
        qr_svg = generate(payload, logo_svg=logo_svg)
    except GeneratorFailure:
        raise
    except Exception as exc:
        raise GeneratorFailure(payload, str(exc) or exc.__class__.__name__) from exc
    if not qr_svg:
        raise GeneratorFailure(payload, "no SVG data returned")

    merged = template.merge(qr_svg)
    output_path = output_dir / f"{identifier}.svg"
    write_atomic(output_path, merged)
    return output_path


def run_batch(
    template: Template,
    records: Iterable[Mapping[str, Optional[str]]],
    output_dir: Path,
    *,
    fields: RecordFields = RecordFields(),
    logo_svg: Optional[str] = None,
    generate: GenerateFn = generate_qr_svg,
) -> BatchSummary:
    """Composite every record; a failing record is logged and skipped."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    summary = BatchSummary()
    iterator = iter(records)
    index = 0
    while True:
        index += 1
        try:
            record = next(iterator)
        except StopIteration:
            break
        except MalformedRecord as exc:
            summary.results.append(RecordResult(index=index, record={}, error=exc))
            log.error("Error reading row %d: %s", index, exc)
            continue

        result = RecordResult(index=index, record=dict(record))
        result.identifier = record.get(fields.identifier)
        try:
            result.output_path = process_record(
                template,
                record,
                output_dir,
                fields=fields,
                logo_svg=logo_svg,
                generate=generate,
            )
        except (MissingFieldError, GeneratorFailure, MalformedMarkup, MalformedQRGraphic, OSError) as exc:
            result.error = exc
            log.error("Error processing row %d %r: %s", index, dict(record), exc)
        else:
            log.info("Generated: %s", result.output_path)
        summary.results.append(result)

    log.info(
        "Processing complete: %d written, %d failed",
        len(summary.succeeded),
        len(summary.failed),
    )
    return summary
