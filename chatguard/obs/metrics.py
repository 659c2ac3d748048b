"""Central registry for Prometheus metrics used by the moderation engine."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, Summary


CLASSIFICATIONS_TOTAL = Counter(
	"chatguard_classifications_total",
	"Messages classified",
	["result"],
)

CLASSIFY_LATENCY = Histogram(
	"chatguard_classify_duration_seconds",
	"Classification latency in seconds",
	buckets=(0.0005, 0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25),
)

CATEGORY_HITS_TOTAL = Counter(
	"chatguard_category_hits_total",
	"Messages flagged per lexicon category",
	["category"],
)

LEXICON_SIZE = Gauge(
	"chatguard_lexicon_words",
	"Words currently loaded per lexicon category",
	["category"],
)

LEXICON_UPDATES = Counter(
	"chatguard_lexicon_updates_total",
	"Lexicon snapshot swaps",
	["category", "source"],
)

LEXICON_MALFORMED_ENTRIES = Counter(
	"chatguard_lexicon_malformed_entries_total",
	"Lexicon entries skipped because they were not usable strings",
	["category"],
)

SANCTION_DECISIONS = Counter(
	"chatguard_sanction_decisions_total",
	"Sanction decisions returned to callers",
	["outcome"],
)

SANCTION_CONFLICTS = Counter(
	"chatguard_sanction_conflicts_total",
	"Optimistic concurrency collisions on sanction records",
)

BLOCKS_ISSUED = Counter(
	"chatguard_blocks_issued_total",
	"Users blocked after reaching the warning threshold",
)

STORE_FAILURES = Counter(
	"chatguard_store_failures_total",
	"Backing store calls that failed after retries",
	["store", "op"],
)

GATE_DECISIONS = Counter(
	"chatguard_gate_decisions_total",
	"Send-path decisions",
	["action"],
)

REDIS_UP = Gauge("chatguard_redis_up", "Redis availability (1=up,0=down)")
REDIS_LATENCY = Summary("chatguard_redis_latency_seconds", "Redis ping latency (seconds)")

BACKGROUND_RUNS = Counter(
	"chatguard_jobs_runs_total",
	"Background job executions",
	["name", "result"],
)

BACKGROUND_DURATION = Histogram(
	"chatguard_jobs_duration_seconds",
	"Background job duration",
	["name"],
	buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 15.0, 30.0, 60.0),
)


def mark_redis(up: bool, *, latency_seconds: float | None = None) -> None:
	REDIS_UP.set(1 if up else 0)
	if up and latency_seconds is not None:
		REDIS_LATENCY.observe(latency_seconds)


def record_job(name: str, *, result: str, duration_seconds: float) -> None:
	BACKGROUND_RUNS.labels(name=name, result=result).inc()
	BACKGROUND_DURATION.labels(name=name).observe(duration_seconds)
