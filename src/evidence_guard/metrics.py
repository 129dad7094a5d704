"""Prometheus counters, opt-in via ``PROMETHEUS_ENABLED=1``."""

from __future__ import annotations
import os

from prometheus_client import Counter as PromCounter

PROMETHEUS_ENABLED = os.getenv("PROMETHEUS_ENABLED", "0") == "1"
if PROMETHEUS_ENABLED:
    evidence_decisions_total = PromCounter(
        "evidence_decisions_total", "Filter decisions made", ["kind", "outcome"]
    )
    evidence_stage_fallbacks_total = PromCounter(
        "evidence_stage_fallbacks_total", "Stages served by a fallback", ["stage"]
    )
    evidence_ocr_jobs_total = PromCounter(
        "evidence_ocr_jobs_total", "OCR jobs dispatched to workers", ["outcome"]
    )
    evidence_cache_lookups_total = PromCounter(
        "evidence_cache_lookups_total", "Cache lookups", ["cache", "outcome"]
    )
    evidence_scanned_files_total = PromCounter(
        "evidence_scanned_files_total", "Files handled by the scanner", ["outcome"]
    )


def record_decision(kind: str, approved: bool) -> None:
    if PROMETHEUS_ENABLED:
        outcome = "approved" if approved else "rejected"
        evidence_decisions_total.labels(kind=kind, outcome=outcome).inc()


def record_fallback(stage: str) -> None:
    if PROMETHEUS_ENABLED:
        evidence_stage_fallbacks_total.labels(stage=stage).inc()


def record_ocr_job(outcome: str) -> None:
    if PROMETHEUS_ENABLED:
        evidence_ocr_jobs_total.labels(outcome=outcome).inc()


def record_cache_lookup(cache: str, hit: bool) -> None:
    if PROMETHEUS_ENABLED:
        evidence_cache_lookups_total.labels(
            cache=cache, outcome="hit" if hit else "miss"
        ).inc()


def record_scanned_file(outcome: str) -> None:
    if PROMETHEUS_ENABLED:
        evidence_scanned_files_total.labels(outcome=outcome).inc()
