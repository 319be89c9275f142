"""
Field extraction: raw upload bytes → typed SourceFieldDescriptors.

Two passes:
1. parse()    - decode, detect file type, split into records (best-effort for
                delimited text: ragged rows are padded/truncated and counted).
2. describe() - per-column statistics, type inference, semantic sub-type,
                pattern hints and abbreviation metadata.
"""

import csv
import io
import json
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog
from dateutil import parser as date_parser

from app.config import settings
from app.errors import EmptyInputError, MalformedInputError, ParseError
from app.models.enums import DataType, SemanticType
from app.schemas.imports import ExtractionResult, FieldStatistics, SourceFieldDescriptor

logger = structlog.get_logger(__name__)

TYPE_THRESHOLD = 0.8

NULL_TOKENS = {"", "null", "none", "n/a", "na", "nil", "-"}
BOOLEAN_TOKENS = {"true", "false", "yes", "no", "y", "n"}

COMMON_ABBREVIATIONS = {
    "qty": "quantity",
    "desc": "description",
    "descr": "description",
    "amt": "amount",
    "num": "number",
    "no": "number",
    "prod": "product",
    "prd": "product",
    "mfg": "manufacturer",
    "mfr": "manufacturer",
    "cat": "category",
    "wt": "weight",
    "pct": "percentage",
    "img": "image",
    "pic": "picture",
    "addr": "address",
    "tel": "telephone",
    "ph": "phone",
    "inv": "inventory",
    "stk": "stock",
    "prc": "price",
    "cnt": "count",
    "dt": "date",
    "upd": "updated",
    "crt": "created",
    "ref": "reference",
}

# ── Value Patterns ───────────────────────────────────────────
RE_INTEGER = re.compile(r"^-?\d+$")
RE_NUMBER = re.compile(r"^-?\d+(\.\d+)?$")
RE_DECIMAL_2DP = re.compile(r"^-?\d+\.\d{2}$")
RE_CURRENCY = re.compile(r"^-?\s*[$£€¥]\s*-?[\d,]+(\.\d+)?$|^-?[\d,]+(\.\d+)?\s*[$£€¥]$")
RE_PERCENTAGE = re.compile(r"^-?\d+(\.\d+)?\s*%$")
RE_EMAIL = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
RE_URL = re.compile(r"^(https?://|www\.)\S+$", re.IGNORECASE)
RE_PHONE = re.compile(r"^\+?\d[\d\s\-().]{6,18}\d$")
RE_SKU = re.compile(r"^[A-Z]{2,4}[-_]?\d{3,10}$")
RE_BARCODE = re.compile(r"^\d{8,14}$")
RE_DATE_ISO = re.compile(r"^\d{4}-\d{2}-\d{2}")
RE_DATE_LIKE = re.compile(
    r"^\d{4}-\d{1,2}-\d{1,2}([T\s]\d{1,2}:\d{2}(:\d{2})?.*)?$"
    r"|^\d{1,2}[/.\-]\d{1,2}[/.\-]\d{2,4}$"
    r"|^\d{1,2}\s+[A-Za-z]{3,9}\s+\d{2,4}$"
    r"|^[A-Za-z]{3,9}\s+\d{1,2},?\s+\d{4}$"
)
RE_CODE_ALNUM = re.compile(r"^[A-Za-z]+[-_]?\d+$")
RE_PLACEHOLDER_NAME = re.compile(r"^column_\d+$")
RE_NAME_SPLIT = re.compile(r"[_\s\-.]+")
RE_CAMEL = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")

NAME_SEMANTIC_HINTS: list[tuple[re.Pattern, SemanticType, bool]] = [
    # (pattern, semantic type, requires numeric data)
    (re.compile(r"price|cost|amount|amt|rrp|msrp"), SemanticType.CURRENCY, True),
    (re.compile(r"percent|pct|rate|discount"), SemanticType.PERCENTAGE, True),
    (re.compile(r"e-?mail"), SemanticType.EMAIL, False),
    (re.compile(r"phone|tel|mobile"), SemanticType.PHONE, False),
    (re.compile(r"url|link|website"), SemanticType.URL, False),
    (re.compile(r"image|img|photo|picture"), SemanticType.IMAGE, False),
    (re.compile(r"barcode|upc|ean|gtin"), SemanticType.BARCODE, False),
    (re.compile(r"sku"), SemanticType.SKU, False),
]


@dataclass
class ParsedFile:
    """Decoded records plus the parse diagnostics that feed confidence."""
    headers: list[str]
    records: list[dict[str, Any]]
    headerless: bool = False
    corrupted_rows: int = 0
    encoding: str = "utf-8"
    file_type: str = "csv"
    warnings: list[str] = field(default_factory=list)


# ─── Helpers ──────────────────────────────────────────────────

def as_text(value: Any) -> str:
    """Render a raw cell value as stripped text for inference."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value).strip()


def is_null(text: str) -> bool:
    return text.strip().lower() in NULL_TOKENS


def to_number(text: str) -> Optional[float]:
    """Parse numeric text, tolerating currency symbols, separators and %."""
    cleaned = re.sub(r"[$£€¥,\s%]", "", text)
    if not cleaned or not RE_NUMBER.match(cleaned):
        return None
    try:
        return float(cleaned)
    except ValueError:
        return None


def is_date_like(text: str) -> bool:
    if not RE_DATE_LIKE.match(text):
        return False
    try:
        date_parser.parse(text)
        return True
    except (ValueError, OverflowError):
        return False


def split_name(name: str) -> list[str]:
    """Split a field name into lowercase tokens (snake, kebab, camel, spaces)."""
    spaced = RE_CAMEL.sub(" ", name)
    return [t.lower() for t in RE_NAME_SPLIT.split(spaced) if t]


def expand_abbreviations(name: str) -> Optional[str]:
    """
    Return the name with known abbreviations expanded, space-separated,
    or None when nothing was expanded.
    """
    tokens = split_name(name)
    expanded = [COMMON_ABBREVIATIONS.get(t, t) for t in tokens]
    if expanded == tokens:
        return None
    return " ".join(expanded)


def _share(values: list[str], predicate) -> float:
    if not values:
        return 0.0
    return sum(1 for v in values if predicate(v)) / len(values)


# ─── Field Extractor ──────────────────────────────────────────

class FieldExtractor:
    """Parses uploads and produces immutable field descriptors."""

    def __init__(self, sample_row_limit: Optional[int] = None):
        self.sample_row_limit = sample_row_limit or settings.SAMPLE_ROW_LIMIT

    def extract(
        self,
        content: bytes,
        file_type: Optional[str] = None,
        file_name: Optional[str] = None,
    ) -> ExtractionResult:
        """Parse and describe in one call."""
        return self.describe(self.parse(content, file_type=file_type, file_name=file_name))

    # ── Pass 1: parse ─────────────────────────────────────────

    def parse(
        self,
        content: bytes,
        file_type: Optional[str] = None,
        file_name: Optional[str] = None,
    ) -> ParsedFile:
        text, encoding = self._decode(content)
        if not text.strip():
            raise EmptyInputError("File is empty")

        kind = self._detect_file_type(text, file_type, file_name)
        if kind == "json":
            parsed = self._parse_json(text)
        else:
            parsed = self._parse_delimited(text, delimiter="\t" if kind == "tsv" else None)

        parsed.encoding = encoding
        parsed.file_type = kind
        if not parsed.records:
            raise EmptyInputError("No data rows found")

        logger.info(
            "file_parsed",
            file_type=kind,
            encoding=encoding,
            records=len(parsed.records),
            columns=len(parsed.headers),
            headerless=parsed.headerless,
            corrupted_rows=parsed.corrupted_rows,
        )
        return parsed

    @staticmethod
    def _decode(content: bytes) -> tuple[str, str]:
        if content.startswith(b"\xef\xbb\xbf"):
            return content.decode("utf-8-sig"), "utf-8-sig"
        try:
            return content.decode("utf-8"), "utf-8"
        except UnicodeDecodeError:
            return content.decode("latin-1"), "latin-1"

    @staticmethod
    def _detect_file_type(text: str, declared: Optional[str], file_name: Optional[str]) -> str:
        for hint in (declared, file_name.rsplit(".", 1)[-1] if file_name and "." in file_name else None):
            if not hint:
                continue
            hint = hint.lower().split("/")[-1]
            if hint in ("json", "ndjson"):
                return "json"
            if hint in ("tsv", "tab-separated-values"):
                return "tsv"
            if hint in ("csv", "txt", "plain"):
                return "csv"
        return "json" if text.lstrip()[:1] in ("[", "{") else "csv"

    def _parse_json(self, text: str) -> ParsedFile:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise MalformedInputError(f"Invalid JSON at line {e.lineno} column {e.colno}: {e.msg}") from e

        if isinstance(data, dict):
            data = [data]
        if not isinstance(data, list):
            raise MalformedInputError("JSON must be an array of objects or a single object")
        if any(not isinstance(item, dict) for item in data):
            raise MalformedInputError("JSON array must contain only objects")

        headers: list[str] = []
        seen = set()
        for item in data:
            for key in item:
                if key not in seen:
                    seen.add(key)
                    headers.append(str(key))

        records = [{h: item.get(h) for h in headers} for item in data]
        records = [r for r in records if any(not is_null(as_text(v)) for v in r.values())]
        return ParsedFile(headers=headers, records=records)

    def _parse_delimited(self, text: str, delimiter: Optional[str] = None) -> ParsedFile:
        warnings = []
        if "\x00" in text:
            text = text.replace("\x00", "")
            warnings.append("NUL bytes removed")

        if delimiter is None:
            try:
                delimiter = csv.Sniffer().sniff(text[:4096], delimiters=",;\t|").delimiter
            except csv.Error:
                delimiter = ","

        try:
            rows = [
                [cell.strip() for cell in row]
                for row in csv.reader(io.StringIO(text), delimiter=delimiter)
            ]
        except csv.Error as e:
            raise ParseError(f"Unreadable delimited file: {e}") from e

        rows = [r for r in rows if any(cell for cell in r)]
        if not rows:
            return ParsedFile(headers=[], records=[], warnings=warnings)

        first = rows[0]
        headerless = not self._looks_like_header(first)
        width = len(first)

        if headerless:
            headers = [f"column_{i + 1}" for i in range(width)]
            data_rows = rows
        else:
            headers = self._dedupe_headers(first)
            data_rows = rows[1:]

        corrupted = 0
        records = []
        for row in data_rows:
            if len(row) != width:
                corrupted += 1
                row = (row + [""] * width)[:width]
            records.append(dict(zip(headers, row)))

        if corrupted:
            logger.warning("corrupted_rows_recovered", count=corrupted, expected_width=width)

        return ParsedFile(
            headers=headers,
            records=records,
            headerless=headerless,
            corrupted_rows=corrupted,
            warnings=warnings,
        )

    @staticmethod
    def _looks_like_header(row: list[str]) -> bool:
        """A header row holds only non-numeric, non-date, non-boolean labels."""
        labels = [c for c in row if c]
        if not labels:
            return False
        for cell in labels:
            if to_number(cell) is not None or is_date_like(cell):
                return False
            if cell.lower() in ("true", "false"):
                return False
            if RE_EMAIL.match(cell) or RE_URL.match(cell):
                return False
        return True

    @staticmethod
    def _dedupe_headers(row: list[str]) -> list[str]:
        headers = []
        counts: Counter = Counter()
        for i, cell in enumerate(row):
            name = cell or f"column_{i + 1}"
            counts[name] += 1
            headers.append(name if counts[name] == 1 else f"{name}_{counts[name]}")
        return headers

    # ── Pass 2: describe ──────────────────────────────────────

    def describe(self, parsed: ParsedFile) -> ExtractionResult:
        total = len(parsed.records)
        fields = []
        for position, name in enumerate(parsed.headers):
            values = [as_text(rec.get(name)) for rec in parsed.records]
            fields.append(self._describe_field(name, position, values))

        sample_rows = [dict(rec) for rec in parsed.records[: self.sample_row_limit]]
        confidence = self._extraction_confidence(fields, parsed.corrupted_rows, total)

        return ExtractionResult(
            fields=fields,
            sample_rows=sample_rows,
            total_records=total,
            headerless=parsed.headerless,
            confidence=confidence,
            corrupted_rows=parsed.corrupted_rows,
            encoding=parsed.encoding,
            file_type=parsed.file_type,
        )

    def _describe_field(self, name: str, position: int, values: list[str]) -> SourceFieldDescriptor:
        total = len(values)
        non_null = [v for v in values if not is_null(v)]
        null_pct = (total - len(non_null)) / total * 100 if total else 0.0
        unique_pct = len(set(non_null)) / len(non_null) * 100 if non_null else 0.0

        expanded = expand_abbreviations(name)
        data_type = self._infer_type(non_null)
        semantic = self._infer_semantic(name, expanded, data_type, non_null)

        samples: list[str] = []
        for v in non_null:
            if v not in samples:
                samples.append(v)
            if len(samples) >= 5:
                break

        return SourceFieldDescriptor(
            name=name,
            position=position,
            data_type=data_type,
            semantic_type=semantic,
            null_percentage=round(null_pct, 2),
            unique_percentage=round(unique_pct, 2),
            sample_values=samples,
            patterns=self._detect_patterns(non_null),
            statistics=self._statistics(non_null, data_type),
            expanded_name=expanded,
        )

    @staticmethod
    def _infer_type(values: list[str]) -> DataType:
        """boolean → numeric → date → json → string, each needing an 80% share."""
        if not values:
            return DataType.STRING
        if _share(values, lambda v: v.lower() in BOOLEAN_TOKENS) >= TYPE_THRESHOLD:
            return DataType.BOOLEAN
        numeric = [v for v in values if to_number(v) is not None]
        if len(numeric) / len(values) >= TYPE_THRESHOLD:
            if all(RE_INTEGER.match(re.sub(r"[,\s]", "", v)) for v in numeric):
                return DataType.INTEGER
            return DataType.NUMBER
        if _share(values, is_date_like) >= TYPE_THRESHOLD:
            return DataType.DATE
        if _share(values, _is_json_text) >= TYPE_THRESHOLD:
            return DataType.JSON
        return DataType.STRING

    @staticmethod
    def _infer_semantic(
        name: str,
        expanded: Optional[str],
        data_type: DataType,
        values: list[str],
    ) -> Optional[SemanticType]:
        # ISO dates would otherwise pass the phone pattern
        if data_type == DataType.DATE:
            return SemanticType.DATE
        if values:
            value_checks = [
                (SemanticType.EMAIL, lambda v: bool(RE_EMAIL.match(v))),
                (SemanticType.URL, lambda v: bool(RE_URL.match(v))),
                (SemanticType.CURRENCY, lambda v: bool(RE_CURRENCY.match(v))),
                (SemanticType.PERCENTAGE, lambda v: bool(RE_PERCENTAGE.match(v))),
                (SemanticType.SKU, lambda v: bool(RE_SKU.match(v))),
                (SemanticType.BARCODE, lambda v: bool(RE_BARCODE.match(v)) and len(v) in (8, 12, 13, 14)),
                (SemanticType.PHONE, lambda v: bool(RE_PHONE.match(v)) and bool(re.search(r"[\s\-().+]", v))),
            ]
            for semantic, check in value_checks:
                if _share(values, check) >= TYPE_THRESHOLD:
                    return semantic

        haystack = f"{name.lower()} {expanded or ''}"
        numeric = data_type in (DataType.NUMBER, DataType.INTEGER)
        for pattern, semantic, needs_numeric in NAME_SEMANTIC_HINTS:
            if pattern.search(haystack) and (numeric or not needs_numeric):
                return semantic

        return None

    @staticmethod
    def _detect_patterns(values: list[str]) -> list[str]:
        if not values:
            return []
        checks = [
            ("integer_only", lambda v: bool(RE_INTEGER.match(v))),
            ("decimal_two_places", lambda v: bool(RE_DECIMAL_2DP.match(v))),
            ("currency_symbol", lambda v: bool(re.search(r"[$£€¥]", v))),
            ("date_iso", lambda v: bool(RE_DATE_ISO.match(v))),
            ("code_alphanum", lambda v: bool(RE_CODE_ALNUM.match(v))),
        ]
        patterns = [label for label, check in checks if _share(values, check) >= TYPE_THRESHOLD]
        if len(values) > 1 and len({len(v) for v in values}) == 1:
            patterns.append("fixed_length")
        return patterns

    @staticmethod
    def _statistics(values: list[str], data_type: DataType) -> FieldStatistics:
        if not values:
            return FieldStatistics()
        common = [v for v, _ in Counter(values).most_common(3)]
        avg_length = round(sum(len(v) for v in values) / len(values), 2)

        if data_type in (DataType.NUMBER, DataType.INTEGER):
            numbers = [n for n in (to_number(v) for v in values) if n is not None]
            if numbers:
                return FieldStatistics(
                    min=min(numbers),
                    max=max(numbers),
                    average=round(sum(numbers) / len(numbers), 4),
                    avg_length=avg_length,
                    common_values=common,
                )
        return FieldStatistics(avg_length=avg_length, common_values=common)

    @staticmethod
    def _extraction_confidence(
        fields: list[SourceFieldDescriptor],
        corrupted_rows: int,
        total_records: int,
    ) -> float:
        if not fields:
            return 0.0
        meaningful = sum(
            1 for f in fields
            if not RE_PLACEHOLDER_NAME.match(f.name) and len(f.name) >= 2 and re.search(r"[A-Za-z]", f.name)
        )
        type_variety = len({f.data_type for f in fields}) / len(fields)
        mean_null = sum(f.null_percentage for f in fields) / len(fields) / 100
        corrupted_share = corrupted_rows / total_records if total_records else 0.0

        score = (
            0.5
            + 0.3 * (meaningful / len(fields))
            + 0.2 * type_variety
            - 0.2 * mean_null
            - 0.3 * corrupted_share
        )
        return round(max(0.0, min(1.0, score)), 4)


def _is_json_text(text: str) -> bool:
    if not text or text[0] not in "[{":
        return False
    try:
        json.loads(text)
        return True
    except json.JSONDecodeError:
        return False
