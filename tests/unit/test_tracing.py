import pytest

from crew_insight.obs.tracing import CostModel, Timer, TokenUsage, TraceStore


def test_trace_store_records_and_summarises() -> None:
    store = TraceStore(cost_model=CostModel(input_per_1k=1.0, output_per_1k=2.0))
    usage = TokenUsage()
    usage.add(1000, 500)
    usage.add(1000, 0)

    first = store.create_record(operation="chat", question="q", structured=True, usage=usage, latency_ms=10.0)
    store.create_record(operation="chat", fallback_reason="malformed_output: bad", latency_ms=30.0)

    assert store.get(first.trace_id).total_tokens == 2500
    assert first.estimated_cost_usd == pytest.approx(3.0)
    assert len(store) == 2

    summary = store.summary()
    assert summary["total_requests"] == 2
    assert summary["avg_latency_ms"] == pytest.approx(20.0)
    assert summary["p95_latency_ms"] == pytest.approx(10.0)
    assert summary["structured_rate"] == pytest.approx(0.5)
    assert summary["fallback_count"] == 1
    assert summary["total_input_tokens"] == 2000
    assert summary["total_estimated_cost_usd"] == pytest.approx(3.0)


def test_empty_store_and_lookup_errors() -> None:
    store = TraceStore()

    assert store.summary()["total_requests"] == 0
    assert store.list_recent(limit=0) == []
    with pytest.raises(KeyError):
        store.get("missing")


def test_list_recent_returns_newest_tail() -> None:
    store = TraceStore()
    ids = [store.create_record(operation=f"op{i}").trace_id for i in range(5)]

    assert [record.trace_id for record in store.list_recent(limit=2)] == ids[-2:]


def test_timer_measures_elapsed_time() -> None:
    with Timer() as timer:
        sum(range(1000))

    assert timer.elapsed_ms >= 0.0
