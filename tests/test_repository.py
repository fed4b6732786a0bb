"""Tests for the in-memory and SQLite evidence repositories."""

import pytest


def _evidence(**kwargs):
    from subsidy_evidence.ingestion.schemas import (
        Evidence,
        EvidenceMetadata,
        EvidenceStatus,
        EvidenceType,
        ExtractedContent,
        SecurityScanResult,
        TableData,
    )

    defaults = dict(
        type=EvidenceType.CSV,
        filename="data.csv",
        mime_type="text/csv",
        size=27,
        content=ExtractedContent(
            text="name,amount\nFoo,100\nBar,2.5",
            tables=[TableData(headers=["name", "amount"], rows=[["Foo", 100], ["Bar", 2.5]])],
        ),
        metadata=EvidenceMetadata(checksum="abc", processing_time_ms=12.5),
        status=EvidenceStatus.COMPLETED,
        security_scan=SecurityScanResult(is_safe=True, checks={"size": True}),
    )
    defaults.update(kwargs)
    return Evidence(**defaults)


@pytest.fixture(params=["memory", "sqlite"])
def repository(request, tmp_path):
    from subsidy_evidence.services.repository import (
        InMemoryEvidenceRepository,
        SqliteEvidenceRepository,
    )

    if request.param == "memory":
        return InMemoryEvidenceRepository()
    return SqliteEvidenceRepository(tmp_path / "sqlite" / "evidence.db")


class TestRepository:
    def test_round_trip(self, repository):
        evidence = _evidence()
        repository.create(evidence)

        found = repository.find(evidence.id)
        assert found.id == evidence.id
        assert found.type is evidence.type
        assert found.status is evidence.status
        assert found.content == evidence.content
        assert found.content.tables[0].rows == [["Foo", 100], ["Bar", 2.5]]
        assert found.metadata.checksum == "abc"
        assert found.security_scan.is_safe
        assert found.created_at == evidence.created_at

    def test_find_missing(self, repository):
        assert repository.find("missing") is None

    def test_update(self, repository):
        from subsidy_evidence.ingestion.schemas import EvidenceStatus

        evidence = _evidence(status=EvidenceStatus.PENDING)
        repository.create(evidence)

        updated = evidence.model_copy(update={"status": EvidenceStatus.FAILED, "error": "boom"})
        repository.update(updated)

        found = repository.find(evidence.id)
        assert found.status is EvidenceStatus.FAILED
        assert found.error == "boom"

    def test_update_missing(self, repository):
        with pytest.raises(KeyError):
            repository.update(_evidence())

    def test_delete(self, repository):
        evidence = _evidence()
        repository.create(evidence)
        assert repository.delete(evidence.id)
        assert not repository.delete(evidence.id)
        assert repository.find(evidence.id) is None

    def test_list_filters_and_paging(self, repository):
        from subsidy_evidence.ingestion.schemas import (
            EvidenceSource,
            EvidenceStatus,
            EvidenceType,
        )

        repository.create(_evidence(filename="a.csv"))
        repository.create(_evidence(filename="b.pdf", type=EvidenceType.PDF, status=EvidenceStatus.FAILED))
        repository.create(_evidence(filename="c.csv", source=EvidenceSource.URL_FETCH, security_scan=None))

        assert len(repository.list()) == 3
        assert {e.filename for e in repository.list(type=EvidenceType.CSV)} == {"a.csv", "c.csv"}
        assert [e.filename for e in repository.list(status=EvidenceStatus.FAILED)] == ["b.pdf"]
        assert [e.filename for e in repository.list(source=EvidenceSource.URL_FETCH)] == ["c.csv"]
        assert len(repository.list(limit=2)) == 2
        assert len(repository.list(limit=2, offset=2)) == 1


class TestInMemoryRepository:
    def test_duplicate_id_rejected(self):
        from subsidy_evidence.services.repository import InMemoryEvidenceRepository

        repo = InMemoryEvidenceRepository()
        evidence = _evidence()
        repo.create(evidence)
        with pytest.raises(ValueError):
            repo.create(evidence)

    def test_returns_copies(self):
        from subsidy_evidence.services.repository import InMemoryEvidenceRepository

        repo = InMemoryEvidenceRepository()
        evidence = _evidence()
        repo.create(evidence)

        found = repo.find(evidence.id)
        found.metadata.tags.append("edited")
        assert repo.find(evidence.id).metadata.tags == []


class TestSqliteRepository:
    def test_persists_across_instances(self, tmp_path):
        from subsidy_evidence.services.repository import SqliteEvidenceRepository

        path = tmp_path / "evidence.db"
        evidence = _evidence()
        SqliteEvidenceRepository(path).create(evidence)

        assert SqliteEvidenceRepository(path).find(evidence.id).filename == "data.csv"
