"""Fetch-by-URL uploads with streaming size limits."""

from __future__ import annotations

import base64
import re
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import unquote, urlparse

import httpx

from ..errors import FetchError, PayloadTooLarge
from .canonical import MediaFamily, normalize_content_type

_FILENAME_RE = re.compile(
    r"filename\*?=(?:UTF-8''|utf-8'')?\"?([^\";]+)\"?",
    re.IGNORECASE,
)

# HEAD not implemented by the origin; fall back to the GET response headers.
_HEAD_UNSUPPORTED = {405, 501}


def _filename_from_content_disposition(value: str | None) -> str | None:
    if not isinstance(value, str) or not value.strip():
        return None
    m = _FILENAME_RE.search(value)
    if not m:
        return None
    raw = m.group(1).strip()
    if not raw:
        return None
    # RFC5987 style may be percent-encoded
    return unquote(raw)


def _filename_from_url(url: str) -> str | None:
    try:
        parsed = urlparse(url)
    except ValueError:
        return None
    name = Path(unquote(parsed.path or "")).name
    return name or None


def _parse_data_uri(uri: str) -> tuple[bytes, str | None]:
    """Return (bytes, content_type) for a data: URI."""
    header, _, payload = uri.partition(",")
    if not payload:
        return b"", None

    # data:[<mediatype>][;base64],<data>
    ct = None
    base64_flag = False
    for part in header[5:].split(";"):
        part = part.strip()
        if not part:
            continue
        if part.lower() == "base64":
            base64_flag = True
            continue
        if "/" in part and ct is None:
            ct = part

    if base64_flag:
        try:
            return base64.b64decode(payload, validate=False), ct
        except ValueError as e:
            raise FetchError(f"data URI base64 decode failed: {e}") from e

    return unquote(payload).encode("utf-8"), ct


@dataclass(frozen=True)
class FetchedContent:
    data: bytes
    content_type: str | None
    filename: str | None
    url: str
    final_url: str | None = None  # after redirects


class RemoteFetcher:
    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
        max_bytes: int = 20 * 1024 * 1024,
    ):
        self.max_bytes = int(max_bytes)
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            follow_redirects=True,
            timeout=httpx.Timeout(timeout_seconds),
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def probe_content_type(self, url: str) -> str | None:
        """HEAD the URL so unsupported media is rejected before downloading."""
        try:
            resp = await self.client.head(url)
        except httpx.HTTPError as e:
            raise FetchError(f"request failed: {url} ({e})") from e
        if resp.status_code in _HEAD_UNSUPPORTED:
            return None
        if resp.is_error:
            raise FetchError(f"fetch failed ({resp.status_code}): {url}")
        return resp.headers.get("content-type")

    async def fetch(self, url: str, family: MediaFamily) -> FetchedContent:
        if not isinstance(url, str) or not url.strip():
            raise FetchError("url required")
        url = url.strip()

        if url.startswith("data:"):
            data, ct = _parse_data_uri(url)
            family.check_content_type(ct)
            if len(data) > self.max_bytes:
                raise PayloadTooLarge(f"payload exceeds {self.max_bytes} bytes")
            return FetchedContent(data=data, content_type=ct, filename=None, url="data:")

        if urlparse(url).scheme not in ("http", "https"):
            raise FetchError(f"unsupported url scheme: {url}")

        url_name = _filename_from_url(url)
        probed = await self.probe_content_type(url)
        if probed is not None:
            family.check_content_type(probed, url_name)

        try:
            async with self.client.stream("GET", url) as resp:
                if resp.is_error:
                    raise FetchError(f"fetch failed ({resp.status_code}): {url}")

                ct = resp.headers.get("content-type") or probed
                filename = (
                    _filename_from_content_disposition(resp.headers.get("content-disposition"))
                    or _filename_from_url(str(resp.url))
                )
                family.check_content_type(ct, filename)

                declared = resp.headers.get("content-length")
                if declared and declared.isdigit() and int(declared) > self.max_bytes:
                    raise PayloadTooLarge(f"payload exceeds {self.max_bytes} bytes")

                buf = bytearray()
                async for chunk in resp.aiter_bytes():
                    buf.extend(chunk)
                    if len(buf) > self.max_bytes:
                        raise PayloadTooLarge(f"payload exceeds {self.max_bytes} bytes")
                final_url = str(resp.url) if resp.url else None
        except httpx.HTTPError as e:
            raise FetchError(f"request failed: {url} ({e})") from e

        return FetchedContent(
            data=bytes(buf),
            content_type=normalize_content_type(ct) or None,
            filename=filename,
            url=url,
            final_url=final_url,
        )
