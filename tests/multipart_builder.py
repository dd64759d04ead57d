"""
Build multipart/form-data request bodies byte by byte for tests.
"""

from typing import List, Optional

CRLF = b"\r\n"
LF = b"\n"


class MultipartBuilder:
    """Build multipart/form-data messages byte-by-byte."""

    def __init__(
        self,
        boundary: str = "----PhotoMapTestBoundary7MA4YWxkTrZu0gW",
        line_ending: bytes = CRLF,
        include_final_terminator: bool = True,
        preamble: Optional[bytes] = None,
        epilogue: Optional[bytes] = None,
    ):
        self.boundary = boundary
        self.line_ending = line_ending
        self.include_final_terminator = include_final_terminator
        self.preamble = preamble
        self.epilogue = epilogue
        self.parts: List[bytes] = []

    @property
    def content_type(self) -> str:
        return f"multipart/form-data; boundary={self.boundary}"

    def add_field(self, name: str, value: str, content_type: Optional[str] = None) -> "MultipartBuilder":
        """Add a text field."""
        headers = self._build_headers(name, None, content_type)
        self.parts.append(headers + value.encode("utf-8"))
        return self

    def add_file(
        self,
        name: str,
        filename: str,
        content: bytes,
        content_type: Optional[str] = "application/octet-stream",
        filename_star: Optional[str] = None,
    ) -> "MultipartBuilder":
        """Add a file field."""
        headers = self._build_headers(name, filename, content_type, filename_star)
        self.parts.append(headers + content)
        return self

    def add_raw_part(self, raw_bytes: bytes) -> "MultipartBuilder":
        """Add a completely raw part (for malformed tests)."""
        self.parts.append(raw_bytes)
        return self

    def _build_headers(
        self,
        name: str,
        filename: Optional[str],
        content_type: Optional[str],
        filename_star: Optional[str] = None,
    ) -> bytes:
        cd = f'Content-Disposition: form-data; name="{name}"'
        if filename is not None:
            escaped_filename = filename.replace('\\', '\\\\').replace('"', '\\"')
            cd += f'; filename="{escaped_filename}"'
        if filename_star is not None:
            cd += f"; filename*={filename_star}"

        lines = [cd.encode("utf-8")]
        if content_type:
            lines.append(f"Content-Type: {content_type}".encode("utf-8"))

        return self.line_ending.join(lines) + self.line_ending + self.line_ending

    def build(self) -> bytes:
        """Build the complete multipart message."""
        result = b""

        if self.preamble:
            result += self.preamble

        boundary_bytes = f"--{self.boundary}".encode("utf-8")
        final_boundary_bytes = f"--{self.boundary}--".encode("utf-8")

        for i, part in enumerate(self.parts):
            result += boundary_bytes + self.line_ending
            result += part
            if i < len(self.parts) - 1 or self.include_final_terminator:
                result += self.line_ending

        if self.include_final_terminator:
            result += final_boundary_bytes + self.line_ending

        if self.epilogue:
            result += self.epilogue

        return result
