"""
EMS Pipeline — OCR & image service
═══════════════════════════════════
Text extraction for estimate photos and scanned documents.

  images  → preprocess (2x upscale, greyscale, autocontrast, threshold)
          → tesseract
  PDFs    → page-by-page rasterization → tesseract

OCR never fails the owning estimate: every error is logged and treated as
"no text". Blocking tesseract work runs in the default executor, bounded by
a deadline.
"""
import asyncio
import logging
import re
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytesseract
from pdf2image import convert_from_path, pdfinfo_from_path
from PIL import Image, ImageOps

from .config import IMAGE_EXTENSIONS
from .models import OcrResult
from .reliability import with_deadline

log = logging.getLogger("ems.ocr")

OCR_LANG = "eng"
OCR_CONFIG = "--oem 1 --psm 3"
OCR_DPI = 150
THRESHOLD = 128


class ImageValidationError(ValueError):
    pass


# ============================================================
# Structured entity extraction
# ============================================================

VIN_RE = re.compile(r"\b[A-HJ-NPR-Z0-9]{17}\b")
PHONE_RE = re.compile(r"\(?\b([0-9]{3})\)?[-.\s]?([0-9]{3})[-.\s]?([0-9]{4})\b")
EMAIL_RE = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
CLAIM_RE = re.compile(r"(?:claim|file|ref)[\s#:]*([A-Z0-9-]{6,20})", re.IGNORECASE)
ESTIMATE_RE = re.compile(r"(?:estimate|est)[\s#:]*([A-Z0-9-]{6,20})", re.IGNORECASE)

DAMAGE_KEYWORDS = [
    "dent", "scratch", "cracked", "broken", "damaged", "bent", "torn",
    "collision", "impact", "bumper", "hood", "door", "fender", "quarter panel",
    "headlight", "taillight", "windshield", "mirror", "paint",
]

PART_KEYWORDS = [
    "airbag", "alternator", "battery", "brake", "clutch", "engine",
    "exhaust", "filter", "radiator", "starter", "transmission", "tire",
    "wheel", "axle", "suspension", "catalytic converter",
]


def _unique(values: List[str]) -> List[str]:
    return list(dict.fromkeys(values))


def extract_automotive_data(text: str) -> Dict[str, List[str]]:
    """Pull VINs, contacts, claim/estimate numbers and keyword hits out of OCR text."""
    lowered = text.lower()
    return {
        "vins": _unique(VIN_RE.findall(text)),
        "phone_numbers": _unique([m.group(0) for m in PHONE_RE.finditer(text)]),
        "emails": _unique(EMAIL_RE.findall(text)),
        "claim_numbers": _unique(CLAIM_RE.findall(text)),
        "estimate_numbers": _unique(ESTIMATE_RE.findall(text)),
        "damages": [k for k in DAMAGE_KEYWORDS if k in lowered],
        "parts": [k for k in PART_KEYWORDS if k in lowered],
    }


def classify_image(image_path: Path) -> str:
    """Image kind from its file name; damage photo unless named otherwise."""
    name = image_path.name.lower()
    if "vin" in name:
        return "vin"
    if "damage" in name or "photo" in name:
        return "damage"
    if "before" in name:
        return "before"
    if "after" in name:
        return "after"
    if "supplement" in name:
        return "supplement"
    if image_path.suffix.lower() == ".pdf":
        return "document"
    return "damage"


# ============================================================
# Image processor
# ============================================================

class ImageProcessor:

    def __init__(self, enabled: bool = True, max_file_size_mb: float = 50.0,
                 timeout_seconds: Optional[float] = 120.0):
        self.enabled = enabled
        self.max_file_size_mb = max_file_size_mb
        self.timeout_seconds = timeout_seconds

    @staticmethod
    def is_supported(image_path: Path) -> bool:
        return image_path.suffix.lower() in IMAGE_EXTENSIONS

    def validate(self, image_path: Path):
        """Raise ImageValidationError for oversize, unsupported or undecodable files."""
        if not self.is_supported(image_path):
            raise ImageValidationError(f"Unsupported image format: {image_path.suffix}")
        size = image_path.stat().st_size
        if size > self.max_file_size_mb * 1024 * 1024:
            raise ImageValidationError(
                f"{image_path.name} exceeds maximum size of {self.max_file_size_mb:.0f}MB"
            )
        if image_path.suffix.lower() == ".pdf":
            return
        try:
            with Image.open(image_path) as img:
                img.verify()
        except Exception as e:
            raise ImageValidationError(f"Invalid image file {image_path.name}: {e}") from e

    def preprocess(self, image_path: Path) -> Path:
        """Write an OCR-friendly copy to a temp file; PDFs and failures return the input."""
        if image_path.suffix.lower() == ".pdf":
            return image_path
        try:
            with Image.open(image_path) as img:
                width, height = img.size
                prepared = img.resize((width * 2, height * 2), Image.Resampling.BICUBIC)
                prepared = ImageOps.autocontrast(prepared.convert("L"))
                prepared = prepared.point(lambda p: 255 if p >= THRESHOLD else 0)
                handle = tempfile.NamedTemporaryFile(
                    prefix=f"processed_{image_path.stem}_", suffix=".png", delete=False
                )
                handle.close()
                prepared.save(handle.name, format="PNG")
            log.debug(f"Preprocessed image saved: {handle.name}")
            return Path(handle.name)
        except Exception as e:
            log.warning(f"Failed to preprocess {image_path.name}, using original: {e}")
            return image_path

    # ── recognition (blocking) ───────────────────────────────

    @staticmethod
    def _recognize_image(img: Image.Image) -> Tuple[str, List[float]]:
        text = pytesseract.image_to_string(img, lang=OCR_LANG, config=OCR_CONFIG)
        data = pytesseract.image_to_data(
            img, lang=OCR_LANG, config=OCR_CONFIG, output_type=pytesseract.Output.DICT
        )
        confidences = []
        for conf in data.get("conf", []):
            try:
                value = float(conf)
            except (TypeError, ValueError):
                continue
            if value >= 0:
                confidences.append(value)
        return text, confidences

    def _recognize_pdf(self, pdf_path: Path) -> Tuple[str, List[float]]:
        """Page-by-page so memory stays bounded on long documents."""
        try:
            num_pages = pdfinfo_from_path(str(pdf_path)).get("Pages", 0)
        except Exception:
            num_pages = 0
        parts, confidences = [], []
        pages = range(1, num_pages + 1) if num_pages else [None]
        for page_num in pages:
            kwargs = {"first_page": page_num, "last_page": page_num} if page_num else {}
            images = convert_from_path(str(pdf_path), dpi=OCR_DPI, thread_count=1, **kwargs)
            for img in images:
                text, confs = self._recognize_image(img)
                if text and text.strip():
                    parts.append(text)
                    confidences.extend(confs)
            del images
        return "\n\n".join(parts), confidences

    def _extract_sync(self, image_path: Path) -> Optional[OcrResult]:
        processed = self.preprocess(image_path)
        try:
            if processed.suffix.lower() == ".pdf":
                text, confidences = self._recognize_pdf(processed)
            else:
                with Image.open(processed) as img:
                    text, confidences = self._recognize_image(img)
        finally:
            if processed != image_path:
                processed.unlink(missing_ok=True)

        text = text.strip()
        if not text:
            log.warning(f"No text detected in {image_path.name}")
            return None
        confidence = sum(confidences) / len(confidences) if confidences else 0.0
        log.info(f"Extracted {len(text)} characters from {image_path.name} (conf {confidence:.0f})")
        return OcrResult(
            raw_text=text,
            confidence=round(confidence, 2),
            structured_data=extract_automotive_data(text),
        )

    async def extract_text(self, image_path: Path) -> Optional[OcrResult]:
        if not self.enabled:
            log.debug("OCR is disabled, skipping text extraction")
            return None
        image_path = Path(image_path)
        if not self.is_supported(image_path):
            log.warning(f"Unsupported image format: {image_path.suffix}")
            return None

        log.info(f"Extracting text from image: {image_path.name}")
        loop = asyncio.get_running_loop()
        try:
            return await with_deadline(
                loop.run_in_executor(None, self._extract_sync, image_path),
                self.timeout_seconds,
                f"OCR of {image_path.name}",
            )
        except Exception as e:
            log.error(f"Failed to extract text from {image_path.name}: {e}")
            return None
