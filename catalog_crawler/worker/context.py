"""Per-run state handed to every crawl stage."""

from dataclasses import dataclass, field

from catalog_crawler.config import Settings
from catalog_crawler.db.repository import ProductRepository
from catalog_crawler.ingest.http_client import FetchClient
from catalog_crawler.worker.cancellation import CancellationToken
from catalog_crawler.worker.progress import ProgressTracker


@dataclass
class RunContext:
    """Everything a stage needs: settings, fetch client, storage, progress and the run's token.

    All stages run on the crawler's event loop, so writes to ``progress``
    never interleave mid-update and need no lock.
    """

    settings: Settings
    client: FetchClient
    repo: ProductRepository
    progress: ProgressTracker = field(default_factory=ProgressTracker)
    token: CancellationToken = field(default_factory=CancellationToken)
