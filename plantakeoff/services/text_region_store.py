"""
Text Region Store
Keeps the pre-redaction text of a plan so exports can put dimensions and labels back
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Dict, List

from plantakeoff.domain.models.plan import TextCategory, TextRegion

logger = logging.getLogger(__name__)


class TextRegionStore(ABC):
    """Durable storage of text regions per job; each region carries its position key"""

    @abstractmethod
    def save(self, job_id: str, regions: List[TextRegion]) -> str:
        """Persist regions for a job and return where they went"""

    @abstractmethod
    def load(self, job_id: str) -> List[TextRegion]:
        """Return the regions stored for a job (empty if none)"""


def _region_from_dict(data: Dict) -> TextRegion:
    x, y, width, height = data["bbox"]
    fractions = data.get("fractions") or [0.0, 0.0, 0.0, 0.0]
    return TextRegion(
        text=data["text"],
        x=int(x),
        y=int(y),
        width=int(width),
        height=int(height),
        category=TextCategory(data.get("category", "other")),
        x_fraction=fractions[0],
        y_fraction=fractions[1],
        width_fraction=fractions[2],
        height_fraction=fractions[3],
    )


class JsonFileTextRegionStore(TextRegionStore):
    """One JSON file per job under base_dir"""

    def __init__(self, base_dir: str):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, job_id: str) -> Path:
        return self.base_dir / f"{job_id}_text_regions.json"

    def save(self, job_id: str, regions: List[TextRegion]) -> str:
        filepath = self._path(job_id)
        payload = {
            "job_id": job_id,
            "saved_at": datetime.now().isoformat(),
            "count": len(regions),
            "regions": [region.to_dict() for region in regions],
        }
        with open(filepath, 'w', encoding='utf-8') as f:
            json.dump(payload, f, indent=2, ensure_ascii=False)
        logger.info(f"Saved {len(regions)} text regions to {filepath}")
        return str(filepath)

    def load(self, job_id: str) -> List[TextRegion]:
        filepath = self._path(job_id)
        if not filepath.exists():
            return []
        with open(filepath, 'r', encoding='utf-8') as f:
            payload = json.load(f)
        return [_region_from_dict(item) for item in payload.get("regions", [])]


class InMemoryTextRegionStore(TextRegionStore):
    def __init__(self):
        self._regions: Dict[str, List[TextRegion]] = {}
        self._lock = threading.Lock()

    def save(self, job_id: str, regions: List[TextRegion]) -> str:
        with self._lock:
            self._regions[job_id] = list(regions)
        return f"memory://{job_id}"

    def load(self, job_id: str) -> List[TextRegion]:
        with self._lock:
            return list(self._regions.get(job_id, []))

    def find(self, job_id: str, position_key: str) -> List[TextRegion]:
        """All regions of a job that start at the given position"""
        with self._lock:
            return [r for r in self._regions.get(job_id, []) if r.position_key == position_key]
