"""Unit tests for keeper/feeder prometheus metrics."""

from prometheus_client import CollectorRegistry

from keeperbot.monitoring.metrics_rich import KeeperMetrics


def test_counters_by_label():
    metrics = KeeperMetrics()
    metrics.orders_executed.labels(loop="keeper", kind="LIMIT").inc()
    metrics.orders_executed.labels(loop="keeper", kind="LIMIT").inc()
    metrics.orders_executed.labels(loop="keeper", kind="STOP_LOSS").inc()

    reg = metrics.get_registry()
    assert reg.get_sample_value("orders_executed_total", {"loop": "keeper", "kind": "LIMIT"}) == 2
    assert reg.get_sample_value("orders_executed_total", {"loop": "keeper", "kind": "STOP_LOSS"}) == 1


def test_gauges_set():
    metrics = KeeperMetrics()
    metrics.paused.labels(loop="feeder").set(1)
    metrics.model_price.labels(loop="feeder", symbol="ETH").set(2012.5)

    reg = metrics.registry
    assert reg.get_sample_value("system_paused", {"loop": "feeder"}) == 1
    assert reg.get_sample_value("model_price", {"loop": "feeder", "symbol": "ETH"}) == 2012.5


def test_histogram_observations():
    metrics = KeeperMetrics()
    metrics.cycle_duration_ms.labels(loop="keeper").observe(120)
    metrics.cycle_duration_ms.labels(loop="keeper").observe(3000)

    reg = metrics.registry
    assert reg.get_sample_value("keeper_cycle_duration_ms_count", {"loop": "keeper"}) == 2
    assert reg.get_sample_value("keeper_cycle_duration_ms_bucket", {"loop": "keeper", "le": "250.0"}) == 1


def test_instances_do_not_share_registry():
    a = KeeperMetrics()
    b = KeeperMetrics()
    a.nonce_resyncs.labels(loop="keeper").inc()
    assert a.registry is not b.registry
    assert b.registry.get_sample_value("nonce_resyncs_total", {"loop": "keeper"}) is None


def test_explicit_registry_used():
    reg = CollectorRegistry()
    metrics = KeeperMetrics(registry=reg)
    metrics.price_updates.labels(loop="feeder", symbol="BTC", outcome="ok").inc()
    assert reg.get_sample_value("price_updates_total", {"loop": "feeder", "symbol": "BTC", "outcome": "ok"}) == 1
