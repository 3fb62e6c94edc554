from gapminer.batch import Finding, FindingCategory, ItemStatus, JobItemRecord, WhooshFindingIndexer


def make_items(job_id, statement):
    return [
        JobItemRecord(
            id=f"{job_id}-i0",
            job_id=job_id,
            position=0,
            url="https://arxiv.org/abs/2403.00001",
            status=ItemStatus.SUCCESS,
            title="Speech at scale",
            findings=[Finding(statement, FindingCategory.DATA, 0.7)],
        ),
        JobItemRecord(
            id=f"{job_id}-i1",
            job_id=job_id,
            position=1,
            url="https://arxiv.org/abs/2403.00002",
            status=ItemStatus.ERROR,
            error_reason="404",
        ),
    ]


def test_whoosh_indexer_search_and_owner_filter(tmp_path):
    indexer = WhooshFindingIndexer(tmp_path / "whoosh")
    indexer.index_job("job-1", "owner-1", make_items("job-1", "No benchmark exists for multilingual speech"))
    indexer.index_job("job-2", "owner-2", make_items("job-2", "Speech models lack a robustness benchmark"))

    hits = indexer.search("benchmark")
    assert {h["job_id"] for h in hits} == {"job-1", "job-2"}

    owned = indexer.search("benchmark", owner_id="owner-1")
    assert len(owned) == 1
    assert owned[0]["finding_id"] == "job-1-i0-f0"
    assert owned[0]["category"] == "data"
    assert owned[0]["url"] == "https://arxiv.org/abs/2403.00001"


def test_whoosh_reindex_and_delete(tmp_path):
    indexer = WhooshFindingIndexer(tmp_path / "whoosh")
    indexer.index_job("job-1", "owner-1", make_items("job-1", "No benchmark exists"))
    indexer.index_job("job-1", "owner-1", make_items("job-1", "Compute budgets are unreported"))
    assert indexer.search("benchmark") == []
    assert len(indexer.search("compute")) == 1

    # Reopening the directory sees the committed documents.
    reopened = WhooshFindingIndexer(tmp_path / "whoosh")
    assert len(reopened.search("compute")) == 1

    reopened.delete_job("job-1")
    assert reopened.search("compute") == []
