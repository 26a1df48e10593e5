"""Tests for the YAML checkpoint store."""

import os
import time
from datetime import timedelta

import yaml

from catalog_crawler.ingest.base import CrawlNode, PendingProductLink
from catalog_crawler.worker.checkpoint import CheckpointFile, CheckpointStore


def _store(tmp_path, max_age=timedelta(hours=24)) -> CheckpointStore:
    return CheckpointStore(tmp_path / "models.yml", tmp_path / "links.yml", max_age)


def _links(count: int) -> list[PendingProductLink]:
    return [
        PendingProductLink(url=f"http://shop.test/product/p{n}", model="A4", brand="Audi")
        for n in range(count)
    ]


def test_links_round_trip(tmp_path):
    store = _store(tmp_path)
    links = _links(3) + [PendingProductLink(url="http://shop.test/x", model="Лампы", brand="Свет")]

    store.write_links(links)

    assert store.read_links() == links


def test_file_is_plain_yaml(tmp_path):
    store = _store(tmp_path)
    store.write_links(_links(1))

    data = yaml.safe_load((tmp_path / "links.yml").read_text(encoding="utf-8"))
    assert data == [{"url": "http://shop.test/product/p0", "model": "A4", "brand": "Audi"}]


def test_absent_checkpoint_is_empty(tmp_path):
    store = _store(tmp_path)
    assert store.read_links() == []
    assert store.read_models() == []
    assert not store.links.exists()


def test_expired_checkpoint_is_ignored(tmp_path):
    store = _store(tmp_path)
    store.write_links(_links(2))
    old = time.time() - 25 * 3600
    os.utime(tmp_path / "links.yml", (old, old))

    assert store.read_links() == []
    assert not store.links.exists()


def test_clear_links(tmp_path):
    store = _store(tmp_path)
    store.write_links(_links(2))
    store.clear_links()

    assert not (tmp_path / "links.yml").exists()
    store.clear_links()


def test_write_leaves_no_temp_files(tmp_path):
    store = _store(tmp_path)
    store.write_links(_links(5))
    store.write_links(_links(2))

    assert sorted(p.name for p in tmp_path.iterdir()) == ["links.yml"]
    assert len(store.read_links()) == 2


def test_models_written_only_once(tmp_path):
    store = _store(tmp_path)
    first = [CrawlNode(url="http://shop.test/audi/a4", label="A4", parent_label="Audi")]
    second = [CrawlNode(url="http://shop.test/bmw/x5", label="X5", parent_label="BMW")]

    assert store.write_models(first) is True
    assert store.write_models(second) is False
    assert store.read_models() == first


def test_malformed_entries_are_skipped(tmp_path):
    path = tmp_path / "links.yml"
    path.write_text(
        "- {url: 'http://shop.test/p1', model: A4, brand: Audi}\n"
        "- just a string\n"
        "- {model: A6}\n",
        encoding="utf-8",
    )
    store = _store(tmp_path)

    assert store.read_links() == [
        PendingProductLink(url="http://shop.test/p1", model="A4", brand="Audi")
    ]


def test_unreadable_yaml_is_treated_as_absent(tmp_path):
    path = tmp_path / "links.yml"
    path.write_text("- [unclosed", encoding="utf-8")
    assert CheckpointFile(path).load() == []
