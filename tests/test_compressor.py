import io

import PyPDF2
import pytest
from PIL import Image

from conftest import make_image, make_pdf
from pyqvault.document.compressor import (
    CompressionService, Compressor, ImageCompressor, PassthroughCompressor, PdfCompressor,
)
from pyqvault.document.validator import validate_pdf
from pyqvault.models.document import FileKind


class GrowingCompressor(Compressor):
    output_media_type = "image/jpeg"

    def compress(self, data: bytes):
        return data + b"padding"


class ExplodingCompressor(Compressor):
    def compress(self, data: bytes):
        raise ValueError("cannot decode")


def test_image_is_downscaled_to_max_width():
    result = ImageCompressor(max_width=1200, quality=70).compress(make_image(1600, 1000))

    with Image.open(io.BytesIO(result)) as image:
        assert image.format == "JPEG"
        assert image.width == 1200
        assert image.height == 750


def test_narrow_image_is_not_upscaled():
    result = ImageCompressor(max_width=1200).compress(make_image(400, 300))

    with Image.open(io.BytesIO(result)) as image:
        assert image.size == (400, 300)


def test_transparent_png_is_flattened():
    result = ImageCompressor().compress(make_image(300, 200, mode="RGBA"))

    with Image.open(io.BytesIO(result)) as image:
        assert image.mode == "RGB"


def test_image_compression_is_deterministic():
    data = make_image(1300, 900)
    compressor = ImageCompressor()
    assert compressor.compress(data) == compressor.compress(data)


def test_pdf_page_copy_keeps_page_count():
    data = make_pdf(pages=3)
    result = PdfCompressor().compress(data)

    assert result is not None
    assert validate_pdf(result) == 3
    assert len(PyPDF2.PdfReader(io.BytesIO(result)).pages) == 3


def test_passthrough_has_nothing_to_try():
    assert PassthroughCompressor().compress(b"anything") is None


def test_service_keeps_smaller_image(config):
    service = CompressionService.from_config(config)
    data = make_image(1600, 1000)

    payload = service.compress_sync(data, FileKind.IMAGE, "image/png")

    assert payload.compressed is True
    assert payload.media_type == "image/jpeg"
    assert payload.size < len(data)
    assert payload.original_size == len(data)


def test_service_never_grows_payload():
    service = CompressionService({FileKind.IMAGE: GrowingCompressor()})
    data = b"\x89PNG tiny"

    payload = service.compress_sync(data, FileKind.IMAGE, "image/png")

    assert payload.data == data
    assert payload.media_type == "image/png"
    assert payload.compressed is False


def test_service_falls_back_to_original_on_error():
    service = CompressionService({FileKind.PDF: ExplodingCompressor()})

    payload = service.compress_sync(b"%PDF-broken", FileKind.PDF, "application/pdf")

    assert payload.data == b"%PDF-broken"
    assert payload.compressed is False


def test_service_pdf_result_is_valid_and_not_larger(config):
    service = CompressionService.from_config(config)
    data = make_pdf(pages=2)

    payload = service.compress_sync(data, FileKind.PDF, "application/pdf")

    assert payload.size <= len(data)
    assert validate_pdf(payload.data) == 2


def test_other_files_pass_through(config):
    service = CompressionService.from_config(config)

    payload = service.compress_sync(b"plain notes", FileKind.OTHER, "text/plain")

    assert payload.data == b"plain notes"
    assert payload.media_type == "text/plain"


def test_pdf_compression_can_be_disabled(config):
    config.PDF_COMPRESSION = False
    service = CompressionService.from_config(config)

    assert isinstance(service.compressors[FileKind.PDF], PassthroughCompressor)


@pytest.mark.asyncio
async def test_async_compress_runs_in_thread(config):
    service = CompressionService.from_config(config)
    data = make_image(1600, 1000)

    payload = await service.compress(data, FileKind.IMAGE, "image/png", label="scan.png")

    assert payload.size < len(data)
