"""Disk checkpoints for the taxonomy cache and the pending product links.

Both files are plain YAML lists of ``{url, model, brand}`` records so they can
be inspected and edited by hand. A missing, expired or unreadable file is
treated as "no checkpoint".
"""

import logging
import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import yaml

from catalog_crawler.config import Settings
from catalog_crawler.ingest.base import CrawlNode, PendingProductLink

logger = logging.getLogger(__name__)

RECORD_KEYS = ("url", "model", "brand")


class CheckpointFile:
    """One YAML checkpoint with max-age expiry and atomic replacement."""

    def __init__(self, path: str | Path, max_age: Optional[timedelta] = None):
        self.path = Path(path)
        self.max_age = max_age

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.max_age is None:
            return False
        now = now or datetime.now(timezone.utc)
        modified = datetime.fromtimestamp(self.path.stat().st_mtime, tz=timezone.utc)
        return now - modified > self.max_age

    def exists(self) -> bool:
        """True when the file is present and young enough to trust."""
        return self.path.is_file() and not self.is_expired()

    def load(self) -> list[dict[str, str]]:
        if not self.path.is_file():
            return []
        if self.is_expired():
            logger.info(f"Ignoring checkpoint {self.path}: older than {self.max_age}")
            return []

        try:
            data = yaml.safe_load(self.path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Unable to read checkpoint {self.path}: {e}")
            return []

        if data is None:
            return []
        if not isinstance(data, list):
            logger.error(f"Checkpoint {self.path} is not a list, ignoring it")
            return []

        records = []
        for entry in data:
            if not isinstance(entry, dict) or not entry.get("url"):
                logger.warning(f"Skipping malformed checkpoint entry in {self.path}: {entry!r}")
                continue
            records.append({key: str(entry.get(key) or "") for key in RECORD_KEYS})
        return records

    def save(self, records: list[dict[str, str]]) -> None:
        """Write records to a temp file next to the target, then rename it over."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                yaml.safe_dump(records, f, allow_unicode=True, sort_keys=False)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


class CheckpointStore:
    """The two resumable queues of a crawler deployment."""

    def __init__(
        self,
        models_path: str | Path,
        links_path: str | Path,
        max_age: Optional[timedelta] = timedelta(hours=24),
    ):
        self.models = CheckpointFile(models_path, max_age)
        self.links = CheckpointFile(links_path, max_age)

    @classmethod
    def from_settings(cls, settings: Settings) -> "CheckpointStore":
        return cls(
            settings.models_checkpoint_path,
            settings.links_checkpoint_path,
            timedelta(hours=settings.checkpoint_max_age_hours),
        )

    # Taxonomy cache

    def read_models(self) -> list[CrawlNode]:
        return [
            CrawlNode(url=r["url"], label=r["model"], parent_label=r["brand"])
            for r in self.models.load()
        ]

    def write_models(self, nodes: list[CrawlNode]) -> bool:
        """Persist the taxonomy cache unless a valid one is already on disk."""
        if self.models.exists():
            return False
        self.models.save(
            [{"url": n.url, "model": n.label, "brand": n.parent_label} for n in nodes]
        )
        logger.info(f"Saved {len(nodes)} models to {self.models.path}")
        return True

    # Pending product links

    def read_links(self) -> list[PendingProductLink]:
        return [
            PendingProductLink(url=r["url"], model=r["model"], brand=r["brand"])
            for r in self.links.load()
        ]

    def write_links(self, links: list[PendingProductLink]) -> None:
        self.links.save(
            [{"url": link.url, "model": link.model, "brand": link.brand} for link in links]
        )
        logger.info(f"Saved {len(links)} pending links to {self.links.path}")

    def clear_links(self) -> None:
        self.links.clear()
