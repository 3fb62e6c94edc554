"""
GapMiner core package.

The batch subsystem runs research-paper URLs through fetch and finding
extraction as durable batch jobs. It exposes dataclasses for jobs, items
and findings, a per-item pipeline with timeouts and retries, usage
ledgers and tier quotas, request rate limiting, subscription lifecycle
handling, and job queues that drive the orchestrator from a worker.
"""
