from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional, Union

from .normalizer import GPSFix

logger = logging.getLogger(__name__)


class LastKnownFixStore:
    """
    Keeps the most recent fix on disk so a restarted client has something to
    show before the first new fix arrives.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def save(self, fix: GPSFix) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(fix.to_dict()), encoding="utf-8")
        except OSError as error:
            logger.warning("Failed to save last known position to %s: %s", self.path, error)

    def load(self) -> Optional[GPSFix]:
        if not self.path.exists():
            return None
        try:
            return GPSFix.from_dict(json.loads(self.path.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError, TypeError) as error:
            logger.warning("Failed to load last known position from %s: %s", self.path, error)
            return None

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
