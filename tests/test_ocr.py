import asyncio
import tempfile
from pathlib import Path

import pytest
from PIL import Image

from ems_pipeline.models import OcrResult
from ems_pipeline.ocr import (
    ImageProcessor, ImageValidationError, classify_image, extract_automotive_data,
)

OCR_TEXT = """
ACME COLLISION  Estimate #: EST-100200
Claim #: CLM-778899
VIN 1G1ZD5ST0LF012345
Call (555) 201-3344 or dana.reyes@acme.example
Front bumper cracked, hood dent, replace radiator and headlight
"""


def test_extract_automotive_data():
    data = extract_automotive_data(OCR_TEXT)
    assert data["vins"] == ["1G1ZD5ST0LF012345"]
    assert data["emails"] == ["dana.reyes@acme.example"]
    assert data["phone_numbers"] == ["(555) 201-3344"]
    assert "EST-100200" in data["estimate_numbers"]
    assert "CLM-778899" in data["claim_numbers"]
    assert {"cracked", "dent", "bumper", "hood", "headlight"} <= set(data["damages"])
    assert data["parts"] == ["radiator"]


def test_vin_excludes_i_o_q():
    assert extract_automotive_data("1G1ZD5ST0LF01234O")["vins"] == []


@pytest.mark.parametrize("name, kind", [
    ("VIN_plate.jpg", "vin"),
    ("front_damage.png", "damage"),
    ("before_1.jpg", "before"),
    ("after.jpg", "after"),
    ("supplement_2.png", "supplement"),
    ("ACME-1001.pdf", "document"),
    ("ACME-1001_3.jpg", "damage"),
])
def test_classify_image(name, kind):
    assert classify_image(Path(name)) == kind


def test_validate(tmp_path):
    good = tmp_path / "a.png"
    Image.new("RGB", (4, 4)).save(good)
    processor = ImageProcessor(max_file_size_mb=1)
    processor.validate(good)

    bad = tmp_path / "b.jpg"
    bad.write_bytes(b"garbage")
    with pytest.raises(ImageValidationError):
        processor.validate(bad)

    with pytest.raises(ImageValidationError):
        processor.validate(tmp_path / "c.bmp")

    big = tmp_path / "big.png"
    big.write_bytes(b"\0" * 2048)
    with pytest.raises(ImageValidationError, match="maximum size"):
        ImageProcessor(max_file_size_mb=0.001).validate(big)


def test_preprocess_writes_upscaled_binary_copy(tmp_path):
    source = tmp_path / "photo.jpg"
    Image.new("RGB", (10, 6), (200, 40, 40)).save(source)

    processed = ImageProcessor().preprocess(source)
    try:
        assert processed != source
        with Image.open(processed) as img:
            assert img.size == (20, 12)
            assert img.mode == "L"
            assert set(img.getdata()) <= {0, 255}
    finally:
        processed.unlink()


def test_preprocess_passes_pdfs_and_unreadable_files_through(tmp_path):
    pdf = tmp_path / "scan.pdf"
    pdf.write_bytes(b"%PDF-1.4")
    broken = tmp_path / "broken.png"
    broken.write_bytes(b"nope")
    processor = ImageProcessor()
    assert processor.preprocess(pdf) == pdf
    assert processor.preprocess(broken) == broken


def test_disabled_ocr_returns_none(tmp_path):
    source = tmp_path / "a.png"
    Image.new("RGB", (4, 4)).save(source)
    assert asyncio.run(ImageProcessor(enabled=False).extract_text(source)) is None


def test_unsupported_format_returns_none(tmp_path):
    assert asyncio.run(ImageProcessor().extract_text(tmp_path / "notes.txt")) is None


def test_extract_text_uses_recognizer(tmp_path, monkeypatch):
    monkeypatch.setattr(tempfile, "tempdir", str(tmp_path))
    source = tmp_path / "vin.png"
    Image.new("RGB", (30, 10), "white").save(source)
    monkeypatch.setattr(
        ImageProcessor, "_recognize_image",
        staticmethod(lambda img: ("VIN 1G1ZD5ST0LF012345\n", [90.0, 80.0])),
    )

    result = asyncio.run(ImageProcessor().extract_text(source))

    assert isinstance(result, OcrResult)
    assert result.raw_text == "VIN 1G1ZD5ST0LF012345"
    assert result.confidence == 85.0
    assert result.structured_data["vins"] == ["1G1ZD5ST0LF012345"]
    # temp file from preprocessing is cleaned up
    assert list(tmp_path.iterdir()) == [source]


def test_blank_recognition_returns_none(tmp_path, monkeypatch):
    source = tmp_path / "blank.png"
    Image.new("RGB", (4, 4), "white").save(source)
    monkeypatch.setattr(ImageProcessor, "_recognize_image", staticmethod(lambda img: ("  \n", [])))
    assert asyncio.run(ImageProcessor().extract_text(source)) is None


def test_recognizer_errors_are_swallowed(tmp_path, monkeypatch):
    source = tmp_path / "x.png"
    Image.new("RGB", (4, 4)).save(source)

    def boom(img):
        raise RuntimeError("tesseract not installed")

    monkeypatch.setattr(ImageProcessor, "_recognize_image", staticmethod(boom))
    assert asyncio.run(ImageProcessor().extract_text(source)) is None
