"""Prometheus metrics for the catalog crawler."""

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("catalog_crawler", "Catalog crawler application info")
app_info.info({"version": "0.1.0", "name": "catalog-crawler"})

# Fetch metrics
pages_fetched_total = Counter(
    "crawler_pages_fetched_total",
    "Total number of page fetches",
    ["status"],
)

fetch_retries_total = Counter(
    "crawler_fetch_retries_total",
    "Total number of fetch retries after transient failures",
)

challenges_detected_total = Counter(
    "crawler_challenges_detected_total",
    "Total number of anti-bot challenge pages received",
)

# Product metrics
products_saved_total = Counter(
    "crawler_products_saved_total",
    "Total number of products extracted and handed to storage",
)

product_failures_total = Counter(
    "crawler_product_failures_total",
    "Total number of product detail pages that failed",
    ["reason"],
)

links_skipped_fresh_total = Counter(
    "crawler_links_skipped_fresh_total",
    "Product links dropped because the stored record is still fresh",
)

# Stage metrics
stage_retries_total = Counter(
    "crawler_stage_retries_total",
    "Total number of same-stage retries",
    ["stage"],
)

stage_duration_seconds = Histogram(
    "crawler_stage_duration_seconds",
    "Time spent in a crawl stage",
    ["stage"],
    buckets=[1.0, 5.0, 30.0, 60.0, 300.0, 900.0, 3600.0, 14400.0],
)

stage_active = Gauge(
    "crawler_stage_active",
    "1 for the stage currently running, 0 otherwise",
    ["stage"],
)

stage_progress_ready = Gauge(
    "crawler_stage_progress_ready",
    "Items completed in the current stage",
)

stage_progress_total = Gauge(
    "crawler_stage_progress_total",
    "Items scheduled in the current stage",
)

cycles_total = Counter(
    "crawler_cycles_total",
    "Total number of work cycles",
    ["outcome"],
)


def record_fetch(success: bool):
    """Record a finished page fetch."""
    pages_fetched_total.labels(status="success" if success else "error").inc()


def record_product_failure(reason: str):
    """Record a product detail page that could not be turned into a product."""
    product_failures_total.labels(reason=reason).inc()


def set_active_stage(stage: str, all_stages: list[str]):
    """Flip the active stage gauge."""
    for name in all_stages:
        stage_active.labels(stage=name).set(1 if name == stage else 0)


def update_progress(ready: int, total: int):
    """Mirror the progress counters."""
    stage_progress_ready.set(ready)
    stage_progress_total.set(total)
