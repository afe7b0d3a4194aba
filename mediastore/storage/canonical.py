"""Canonicalization of uploaded bytes.

Each media family decodes its accepted inputs and re-encodes them into a single
canonical encoding. The canonical bytes are what gets hashed and stored, so
two redundant encodings of the same content map to the same blob.

Encoder settings are module constants. They must not depend on the source or
on deployment configuration.
"""

from __future__ import annotations

import io
import mimetypes
import re
import warnings
from abc import ABC, abstractmethod
from dataclasses import dataclass

from PIL import Image, ImageOps, UnidentifiedImageError

from ..errors import MalformedContent, NotFound, UnsupportedMediaType

OCTET_STREAM = "application/octet-stream"

# Lossless WebP; fixed effort so output is stable for identical pixels.
WEBP_LOSSLESS = True
WEBP_QUALITY = 80
WEBP_METHOD = 4

_PDF_EOF_RE = re.compile(rb"%%EOF\s*$")


@dataclass(frozen=True)
class CanonicalContent:
    data: bytes
    content_type: str
    extension: str

    @property
    def size_bytes(self) -> int:
        return len(self.data)


def normalize_content_type(value: str | None) -> str:
    """Strip parameters and lowercase (``Image/PNG; q=1`` -> ``image/png``)."""
    if not isinstance(value, str):
        return ""
    return value.split(";", 1)[0].strip().lower()


def resolve_content_type(declared: str | None, filename: str | None = None) -> str:
    """Use the declared type; sniff from the filename when it says nothing."""
    ct = normalize_content_type(declared)
    if ct and ct != OCTET_STREAM:
        return ct
    if filename:
        guessed, _ = mimetypes.guess_type(filename)
        if guessed:
            return normalize_content_type(guessed)
    return ct or OCTET_STREAM


class MediaFamily(ABC):
    """A family of accepted inputs sharing one canonical encoding."""

    name: str = ""
    canonical_content_type: str = OCTET_STREAM
    extension: str = "bin"

    @property
    def prefix(self) -> str:
        return self.name

    @abstractmethod
    def accepts(self, content_type: str) -> bool:
        """Whether a resolved content type belongs to this family."""

    def check_content_type(self, content_type: str | None, filename: str | None = None) -> str:
        ct = resolve_content_type(content_type, filename)
        if not self.accepts(ct):
            raise UnsupportedMediaType(f"{ct or 'unknown'} is not accepted for {self.name}")
        return ct

    @abstractmethod
    def encode(self, data: bytes) -> bytes:
        """Re-encode accepted input into the canonical bytes."""

    def canonicalize(
        self,
        data: bytes,
        content_type: str | None,
        filename: str | None = None,
    ) -> CanonicalContent:
        self.check_content_type(content_type, filename)
        if not data:
            raise MalformedContent("empty payload")
        return CanonicalContent(
            data=self.encode(data),
            content_type=self.canonical_content_type,
            extension=self.extension,
        )


class ImageFamily(MediaFamily):
    name = "image"
    canonical_content_type = "image/webp"
    extension = "webp"

    def accepts(self, content_type: str) -> bool:
        return content_type.startswith("image/")

    def encode(self, data: bytes) -> bytes:
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("error", Image.DecompressionBombWarning)
                with Image.open(io.BytesIO(data)) as im:
                    # First frame only; animation is not part of the canonical form.
                    im.seek(0)
                    im.load()
                    frame = _normalize_mode(ImageOps.exif_transpose(im))
        except (Image.DecompressionBombError, Image.DecompressionBombWarning) as e:
            raise MalformedContent(f"image too large to decode: {e}") from e
        except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
            raise MalformedContent(f"image could not be decoded: {e}") from e

        out = io.BytesIO()
        try:
            frame.save(
                out,
                format="WEBP",
                lossless=WEBP_LOSSLESS,
                quality=WEBP_QUALITY,
                method=WEBP_METHOD,
                exact=False,
            )
        except (OSError, ValueError) as e:
            raise MalformedContent(f"image could not be re-encoded: {e}") from e
        return out.getvalue()


def _normalize_mode(im: Image.Image) -> Image.Image:
    """Collapse equivalent pixel representations to RGB or RGBA."""
    # tRNS colour keys on RGB, L and P images count as alpha too.
    has_alpha = im.mode in ("RGBA", "LA", "PA", "RGBa", "La") or "transparency" in im.info
    if not has_alpha:
        return im.convert("RGB") if im.mode != "RGB" else im.copy()

    rgba = im.convert("RGBA")
    # A fully opaque alpha channel carries no information.
    if rgba.getchannel("A").getextrema() == (255, 255):
        return rgba.convert("RGB")
    return rgba


class DocumentFamily(MediaFamily):
    name = "document"
    canonical_content_type = "application/pdf"
    extension = "pdf"

    def accepts(self, content_type: str) -> bool:
        return content_type == "application/pdf"

    def encode(self, data: bytes) -> bytes:
        if not data.startswith(b"%PDF-") or b"%%EOF" not in data[-2048:]:
            raise MalformedContent("not a PDF document")
        # Trailing whitespace after the final %%EOF varies between writers.
        m = _PDF_EOF_RE.search(data)
        if m:
            return data[: m.start() + len(b"%%EOF")]
        return data


FAMILIES: dict[str, MediaFamily] = {
    family.name: family for family in (ImageFamily(), DocumentFamily())
}

_EXTENSIONS = frozenset(family.extension for family in FAMILIES.values())


def known_extensions() -> frozenset[str]:
    return _EXTENSIONS


def get_family(name: str) -> MediaFamily:
    family = FAMILIES.get((name or "").strip().lower())
    if family is None:
        raise NotFound(f"unknown storage family: {name!r}")
    return family


def canonicalize(
    family: str | MediaFamily,
    data: bytes,
    content_type: str | None,
    filename: str | None = None,
) -> CanonicalContent:
    """Validate and re-encode ``data`` into the family's canonical bytes."""
    fam = family if isinstance(family, MediaFamily) else get_family(family)
    return fam.canonicalize(data, content_type, filename)
