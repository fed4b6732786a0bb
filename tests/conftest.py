"""Shared fixtures for the evidence pipeline tests."""

import io

import pytest
from PIL import Image


class FakeReader:
    """Stands in for ``easyocr.Reader``: returns canned ``readtext`` output."""

    def __init__(self, results=None, fail_on=None):
        self.results = results if results is not None else [
            ([[0, 0], [80, 0], [80, 20], [0, 20]], "Revenue", 0.92),
            ([[90, 0], [160, 0], [160, 20], [90, 20]], "1,200", 0.88),
        ]
        self.fail_on = fail_on
        self.calls = 0

    def readtext(self, image):
        self.calls += 1
        if self.fail_on is not None and image == self.fail_on:
            raise RuntimeError("unreadable image")
        return self.results


def make_png(size=(40, 20), color=(255, 255, 255)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def fake_reader():
    return FakeReader()


@pytest.fixture
def png_bytes():
    return make_png()


@pytest.fixture
def storage(tmp_path):
    from subsidy_evidence.services.storage import LocalObjectStore, StorageOptimizer

    object_store = LocalObjectStore(tmp_path / "objects", base_url="file:///evidence")
    return StorageOptimizer(object_store)


@pytest.fixture
def orchestrator(fake_reader, storage):
    from subsidy_evidence.ingestion.ocr import OCREngine
    from subsidy_evidence.ingestion.security import SecurityScanner
    from subsidy_evidence.services.orchestrator import EvidenceOrchestrator
    from subsidy_evidence.services.queue import ProcessingQueue

    return EvidenceOrchestrator(
        scanner=SecurityScanner(enable_virus_scan=False),
        ocr=OCREngine(reader=fake_reader),
        queue=ProcessingQueue(tick_seconds=0.01, daily_cost_limit=100.0),
        storage=storage,
    )
