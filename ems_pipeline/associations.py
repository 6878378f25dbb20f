"""
EMS Pipeline — Image association
═════════════════════════════════
Links estimate photos to estimates by file-name convention:

  ACME-1001.ems   ↔  ACME-1001.jpg, ACME-1001_1.png, ... ACME-1001_10.PDF

Estimate → images:  same directory, same base name or base name + _1.._N.
Image → estimate:   most recently created estimate whose stored source file
                    name contains the image's base name.
"""
import logging
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

from .config import IMAGE_EXTENSIONS

log = logging.getLogger("ems.associations")

SUFFIX_RE = re.compile(r"^(?P<base>.+)_(?P<n>\d+)$")


def image_base_name(image_path: Path) -> str:
    """Base name with any trailing _<n> variant suffix removed."""
    stem = Path(image_path).stem
    m = SUFFIX_RE.match(stem)
    return m.group("base") if m else stem


class AssociationStrategy(ABC):
    """How images and estimates find each other."""

    @abstractmethod
    def find_images(self, estimate_path: Path) -> List[Path]: ...

    @abstractmethod
    async def resolve_estimate(self, image_path: Path, gateway) -> Optional[Dict]: ...


class FilenameAssociation(AssociationStrategy):

    def __init__(self, max_suffix: int = 10, extensions=IMAGE_EXTENSIONS):
        self.max_suffix = max_suffix
        self.extensions = tuple(e.lower() for e in extensions)

    def candidate_stems(self, estimate_path: Path) -> List[str]:
        base = Path(estimate_path).stem
        return [base] + [f"{base}_{i}" for i in range(1, self.max_suffix + 1)]

    def find_images(self, estimate_path: Path) -> List[Path]:
        estimate_path = Path(estimate_path)
        directory = estimate_path.parent
        stems = {s: i for i, s in enumerate(self.candidate_stems(estimate_path))}
        try:
            entries = list(directory.iterdir())
        except OSError as e:
            log.warning(f"Cannot list {directory} for images: {e}")
            return []

        found = [
            p for p in entries
            if p.is_file() and p.stem in stems and p.suffix.lower() in self.extensions
        ]
        found.sort(key=lambda p: (stems[p.stem], p.suffix.lower()))
        if found:
            log.info(f"Found {len(found)} associated image(s) for {estimate_path.name}")
        return found

    async def resolve_estimate(self, image_path: Path, gateway) -> Optional[Dict]:
        base = image_base_name(image_path)
        estimate = await gateway.find_recent_estimate_by_file_name_substring(base)
        if estimate is None:
            log.warning(f"⊘ No associated estimate found for image: {Path(image_path).name}")
        return estimate
