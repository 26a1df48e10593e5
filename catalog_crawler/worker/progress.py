"""Crawl stage tracking and progress counters."""

from dataclasses import dataclass
from enum import Enum

from catalog_crawler import metrics


class ParsingStage(str, Enum):
    """The stage the crawler is currently in."""

    PAUSED = "paused"
    BRANDS = "brands"
    MODELS = "models"
    CATEGORIES = "categories"
    PRODUCT_LIST = "product_list"
    PRODUCTS = "products"

    @property
    def label(self) -> str:
        return self.value.replace("_", " ").capitalize()


ALL_STAGES = [stage.value for stage in ParsingStage]


@dataclass(frozen=True)
class ParsingProgress:
    """Point-in-time progress snapshot for external polling."""

    stage: ParsingStage
    ready: int
    total: int
    cycles_completed: int = 0


class ProgressTracker:
    """Current stage plus ready/total counters.

    Counters only grow within a stage and reset on every stage transition.
    Only the crawler task writes; readers take snapshots.
    """

    def __init__(self, stage: ParsingStage = ParsingStage.PAUSED):
        self.stage = stage
        self.ready = 0
        self.total = 0
        self.cycles_completed = 0

    def start_stage(self, stage: ParsingStage, total: int = 0) -> None:
        self.stage = stage
        self.ready = 0
        self.total = total
        metrics.set_active_stage(stage.value, ALL_STAGES)
        metrics.update_progress(self.ready, self.total)

    def pause(self) -> None:
        self.start_stage(ParsingStage.PAUSED)

    def add_total(self, count: int) -> None:
        self.total += count
        metrics.update_progress(self.ready, self.total)

    def advance(self, count: int = 1) -> None:
        self.ready += count
        metrics.update_progress(self.ready, self.total)

    def complete_cycle(self) -> None:
        self.cycles_completed += 1

    def snapshot(self) -> ParsingProgress:
        return ParsingProgress(
            stage=self.stage,
            ready=self.ready,
            total=self.total,
            cycles_completed=self.cycles_completed,
        )
