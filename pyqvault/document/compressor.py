"""
Payload compressors, one per file kind.

Every compressor is deterministic and may produce a larger payload than its
input; CompressionService compares sizes and keeps whichever is smaller, so a
stored payload never grows.
"""
import asyncio
import io
import logging
from dataclasses import dataclass
from typing import Dict, Optional

import PyPDF2
from PIL import Image, ImageOps

from pyqvault.config import Config
from pyqvault.document.validator import validate_pdf
from pyqvault.models.document import FileKind

logger = logging.getLogger(__name__)


@dataclass
class CompressedPayload:
    data: bytes
    media_type: str
    original_size: int
    compressed: bool

    @property
    def size(self) -> int:
        return len(self.data)


class Compressor:
    """Shrinks one kind of payload. Returns None when there is nothing to try."""

    output_media_type: Optional[str] = None

    def compress(self, data: bytes) -> Optional[bytes]:
        raise NotImplementedError


class PassthroughCompressor(Compressor):
    def compress(self, data: bytes) -> Optional[bytes]:
        return None


class ImageCompressor(Compressor):
    """Downscale to a maximum width and re-encode as JPEG"""

    output_media_type = "image/jpeg"

    def __init__(self, max_width: int = 1200, quality: int = 70):
        self.max_width = max_width
        self.quality = quality

    def compress(self, data: bytes) -> Optional[bytes]:
        with Image.open(io.BytesIO(data)) as source:
            if getattr(source, "is_animated", False):
                return None

            image = ImageOps.exif_transpose(source)
            if image.width > self.max_width:
                height = max(1, round(image.height * self.max_width / image.width))
                image = image.resize((self.max_width, height), Image.Resampling.LANCZOS)

            image = self._flatten(image)
            out = io.BytesIO()
            image.save(out, format="JPEG", quality=self.quality, optimize=True)
            return out.getvalue()

    @staticmethod
    def _flatten(image: Image.Image) -> Image.Image:
        # JPEG has no alpha channel
        if image.mode in ("RGBA", "LA") or (image.mode == "P" and "transparency" in image.info):
            rgba = image.convert("RGBA")
            background = Image.new("RGB", rgba.size, (255, 255, 255))
            background.paste(rgba, mask=rgba.getchannel("A"))
            return background
        if image.mode != "RGB":
            return image.convert("RGB")
        return image


class PdfCompressor(Compressor):
    """Copy every page into a fresh document with compressed content streams"""

    output_media_type = "application/pdf"

    def compress(self, data: bytes) -> Optional[bytes]:
        pdf_reader = PyPDF2.PdfReader(io.BytesIO(data))
        if pdf_reader.is_encrypted:
            return None

        pdf_writer = PyPDF2.PdfWriter()
        for page in pdf_reader.pages:
            new_page = pdf_writer.add_page(page)
            new_page.compress_content_streams()

        if pdf_reader.metadata:
            pdf_writer.add_metadata(
                {k: str(v) for k, v in pdf_reader.metadata.items() if isinstance(k, str)}
            )

        out = io.BytesIO()
        pdf_writer.write(out)
        result = out.getvalue()

        # The copy must still be the same document
        if validate_pdf(result) != len(pdf_reader.pages):
            logger.warning("PDF page copy produced an invalid document, keeping original")
            return None
        return result


class CompressionService:
    """Pick the compressor for a file kind and enforce the keep-smaller rule"""

    def __init__(self, compressors: Dict[FileKind, Compressor]):
        self.compressors = compressors
        self._passthrough = PassthroughCompressor()

    @classmethod
    def from_config(cls, config: Config) -> "CompressionService":
        compressors: Dict[FileKind, Compressor] = {
            FileKind.IMAGE: ImageCompressor(config.IMAGE_MAX_WIDTH, config.IMAGE_QUALITY),
            FileKind.OTHER: PassthroughCompressor(),
        }
        compressors[FileKind.PDF] = PdfCompressor() if config.PDF_COMPRESSION else PassthroughCompressor()
        return cls(compressors)

    def compress_sync(self, data: bytes, kind: FileKind, media_type: str, label: str = "") -> CompressedPayload:
        compressor = self.compressors.get(kind, self._passthrough)
        before = len(data)

        try:
            candidate = compressor.compress(data)
        except Exception as e:
            logger.warning("Compression failed for %s (%s), keeping original: %s", label or kind.value, kind.value, e)
            candidate = None

        if candidate is None:
            return CompressedPayload(data=data, media_type=media_type, original_size=before, compressed=False)

        after = len(candidate)
        if after < before:
            logger.info("%s: %d -> %d bytes (saved)", label or kind.value, before, after)
            return CompressedPayload(
                data=candidate,
                media_type=compressor.output_media_type or media_type,
                original_size=before,
                compressed=True,
            )

        logger.info("%s: %d -> %d bytes (discarded, larger)", label or kind.value, before, after)
        return CompressedPayload(data=data, media_type=media_type, original_size=before, compressed=False)

    async def compress(self, data: bytes, kind: FileKind, media_type: str, label: str = "") -> CompressedPayload:
        """Run compression off the event loop"""
        return await asyncio.to_thread(self.compress_sync, data, kind, media_type, label)
