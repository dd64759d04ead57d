"""
Binary-safe multipart/form-data parser for photo uploads.

The request body is handled as bytes from end to end: part bodies are sliced
out of the original buffer and never decoded, so image data survives
byte-for-byte. Only header lines and scalar field values are decoded.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
from urllib.parse import unquote

CRLF = b"\r\n"
LF = b"\n"

DEFAULT_FILENAME = "upload.bin"

# Content-Type header boundary extraction patterns
BOUNDARY_QUOTED_PATTERN = re.compile(r'boundary="([^"]+)"', re.IGNORECASE)
BOUNDARY_UNQUOTED_PATTERN = re.compile(r'boundary=\s*([^\s;]+)', re.IGNORECASE)


@dataclass
class FormData:
    """Scalar fields plus at most one file from a multipart body."""
    fields: Dict[str, str] = field(default_factory=dict)
    file_name: Optional[str] = None
    file_content: Optional[bytes] = None


@dataclass
class Disposition:
    """The parameters of a part's Content-Disposition header we act on."""
    type: Optional[str] = None
    name: Optional[str] = None
    filename: Optional[str] = None
    filename_star: Optional[str] = None

    @property
    def is_file(self) -> bool:
        # An empty filename="" still marks a file part
        return self.filename is not None or self.filename_star is not None


def parse_boundary(content_type: str) -> Optional[str]:
    """Return the boundary parameter of a Content-Type value, quoted or bare."""
    if not content_type:
        return None
    match = BOUNDARY_QUOTED_PATTERN.search(content_type) or BOUNDARY_UNQUOTED_PATTERN.search(content_type)
    return match.group(1) if match else None


def parse_content_disposition(header_value: str) -> Disposition:
    """
    Parse a Content-Disposition header value.

    ``filename*`` is RFC 5987 decoded. Unknown parameters are ignored.
    """
    disposition = Disposition()
    params = split_header_params(header_value or "")
    if not params:
        return disposition

    disposition.type = params[0].strip().lower() or None
    for param in params[1:]:
        key, sep, value = param.partition("=")
        if not sep:
            continue
        key = key.strip().lower()
        value = _unquote(value.strip())
        if key == "name":
            disposition.name = value
        elif key == "filename":
            disposition.filename = value
        elif key == "filename*":
            disposition.filename_star = decode_rfc5987(value)
    return disposition


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return value[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    return value


def split_header_params(header_value: str) -> List[str]:
    """Split on ``;`` outside quoted strings, so ``filename="a;b"`` stays whole."""
    params: List[str] = []
    start = 0
    in_quotes = False
    escaped = False
    for i, char in enumerate(header_value):
        if escaped:
            escaped = False
        elif char == "\\" and in_quotes:
            escaped = True
        elif char == '"':
            in_quotes = not in_quotes
        elif char == ";" and not in_quotes:
            params.append(header_value[start:i])
            start = i + 1
    if start < len(header_value):
        params.append(header_value[start:])
    return params


def decode_rfc5987(value: str) -> str:
    """Decode ``charset'lang'pct-encoded``; undecodable values come back as-is."""
    charset, sep, rest = value.partition("'")
    _language, sep2, encoded = rest.partition("'")
    if not (sep and sep2):
        return value
    try:
        return unquote(encoded, encoding=charset.lower() or "utf-8", errors="strict")
    except (LookupError, UnicodeDecodeError):
        return value


def _decode_text(raw: bytes) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return raw.decode("latin-1")


class MultipartParser:
    """
    Tolerant multipart/form-data parser.

    Malformed parts (no blank line, no Content-Disposition, no name) are
    skipped rather than rejected. In strict mode only CRLF line breaks are
    recognised; lenient mode also accepts bare LF.
    """

    def __init__(self, strict: bool = True):
        self.strict = strict

    def parse(self, body: bytes, boundary: str) -> FormData:
        """Parse a multipart/form-data body."""
        result = FormData()
        if not boundary:
            return result

        delimiter = f"--{boundary}".encode("latin-1")

        # First segment is the preamble
        for segment in body.split(delimiter)[1:]:
            # Close delimiter "--boundary--", anything after it is epilogue
            if segment.startswith(b"--"):
                break
            self._parse_part(segment, result)

        return result

    def _parse_part(self, segment: bytes, result: FormData) -> None:
        split = self._split_headers(segment)
        if split is None:
            return
        header_block, part_body = split

        header = None
        for line in self._header_lines(header_block):
            name, sep, value = _decode_text(line).partition(":")
            if sep and name.strip().lower() == "content-disposition":
                header = value.strip()
                break
        if header is None:
            return

        disposition = parse_content_disposition(header)
        if not disposition.name:
            return

        part_body = self._strip_trailing_line_break(part_body)

        if disposition.is_file:
            result.file_name = disposition.filename_star or disposition.filename or DEFAULT_FILENAME
            result.file_content = part_body
        else:
            result.fields[disposition.name] = _decode_text(part_body).strip()

    def _split_headers(self, segment: bytes) -> Optional[Tuple[bytes, bytes]]:
        """Split a part on its first blank line. Returns None without one."""
        crlf_pos = segment.find(CRLF + CRLF)
        lf_pos = segment.find(LF + LF) if not self.strict else -1

        if crlf_pos != -1 and (lf_pos == -1 or crlf_pos <= lf_pos):
            return segment[:crlf_pos], segment[crlf_pos + 4:]
        if lf_pos != -1:
            return segment[:lf_pos], segment[lf_pos + 2:]
        return None

    def _header_lines(self, header_block: bytes) -> List[bytes]:
        if self.strict:
            lines = header_block.split(CRLF)
        else:
            lines = [line.rstrip(b"\r") for line in header_block.split(LF)]
        return [line for line in lines if line]

    def _strip_trailing_line_break(self, part_body: bytes) -> bytes:
        if part_body.endswith(CRLF):
            return part_body[:-2]
        if not self.strict and part_body.endswith(LF):
            return part_body[:-1]
        return part_body
