"""Public API for qrmerge."""
from .batch import BatchSummary, MissingFieldError, RecordFields, RecordResult, read_records, run_batch
from .generator import QRStyle, generate_qr_svg, load_logo
from .qrmerge import (
    Geometry,
    GeneratorFailure,
    MalformedMarkup,
    MalformedQRGraphic,
    PlaceholderNotFound,
    QRMergeError,
    Template,
    composite,
    find_by_attribute,
    find_group_by_tag_and_id,
    parse_document,
    resolve_geometry,
    serialize_document,
)

__all__ = [
    "BatchSummary",
    "Geometry",
    "GeneratorFailure",
    "MalformedMarkup",
    "MalformedQRGraphic",
    "MissingFieldError",
    "PlaceholderNotFound",
    "QRMergeError",
    "QRStyle",
    "RecordFields",
    "RecordResult",
    "Template",
    "composite",
    "find_by_attribute",
    "find_group_by_tag_and_id",
    "generate_qr_svg",
    "load_logo",
    "parse_document",
    "read_records",
    "resolve_geometry",
    "run_batch",
    "serialize_document",
]
