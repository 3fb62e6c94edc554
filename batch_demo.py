"""
Example: run a batch job end to end against SQLite + Whoosh, or start an RQ worker.

Usage:
    python3 batch_demo.py --owner local-user --fetcher myapp.fetch:ArxivFetcher \
        --extractor myapp.llm:GapExtractor --url https://arxiv.org/abs/2401.00001
    python3 batch_demo.py --worker
"""

import argparse
from pathlib import Path

from gapminer.batch import InlineJobQueue, JobKind, RQJobQueue, WorkerConfig, build_orchestrator
from gapminer.logging_config import configure_logging


def read_urls(args) -> list:
    urls = list(args.url or [])
    if args.urls_file:
        with args.urls_file.open("r", encoding="utf-8") as f:
            urls.extend(line.strip() for line in f if line.strip())
    return urls


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--url", action="append", help="Paper URL (repeatable)")
    parser.add_argument("--urls-file", type=Path, help="File with one URL per line")
    parser.add_argument("--owner", default="local-user", help="Owner id the job is billed to")
    parser.add_argument("--kind", default=JobKind.GAP_EXTRACTION.value, choices=[k.value for k in JobKind])
    parser.add_argument("--db", default=Path("./data/gapminer.db"), type=Path, help="SQLite DB path")
    parser.add_argument("--whoosh-dir", default=Path("./data/whoosh"), type=Path, help="Whoosh index directory")
    parser.add_argument("--fetcher", default=None, help="ContentFetcher as module:attribute")
    parser.add_argument("--extractor", default=None, help="FindingExtractor as module:attribute")
    parser.add_argument("--worker", action="store_true", help="Run an RQ worker using environment config")
    args = parser.parse_args()

    configure_logging()
    config = WorkerConfig.from_env()
    if args.worker:
        RQJobQueue(config).work()
        return

    args.db.parent.mkdir(parents=True, exist_ok=True)
    config.database_url = f"sqlite+pysqlite:///{args.db}"
    config.findings_index_dir = str(args.whoosh_dir)
    config.content_fetcher = args.fetcher or config.content_fetcher
    config.finding_extractor = args.extractor or config.finding_extractor

    orchestrator = build_orchestrator(config, queue=InlineJobQueue())
    job = orchestrator.create_job(args.owner, JobKind(args.kind), read_urls(args))
    print(f"Job {job.id} finished with status={job.status.value}: {job.result_summary or job.error_message}")
    for item in orchestrator.get_items(job.id):
        print(f"  [{item.status.value}] {item.url} ({len(item.findings)} finding(s)) {item.error_reason or ''}")
    print(f"Findings indexed in Whoosh dir: {args.whoosh_dir}")


if __name__ == "__main__":
    main()
