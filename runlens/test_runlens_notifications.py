"""
Refresh Notifier Tests
"""

from runlens.notifications import RefreshNotifier


def test_delivers_to_every_subscriber():
    notifier = RefreshNotifier()
    seen = []
    notifier.subscribe(lambda key, value: seen.append(("a", key, value)))
    notifier.subscribe(lambda key, value: seen.append(("b", key, value)))

    assert notifier.notify("default/metrics:ALL", 42) == 2
    assert seen == [("a", "default/metrics:ALL", 42), ("b", "default/metrics:ALL", 42)]


def test_unsubscribe():
    notifier = RefreshNotifier()
    seen = []
    unsubscribe = notifier.subscribe(lambda key, value: seen.append(key))
    assert notifier.subscriber_count == 1

    unsubscribe()
    unsubscribe()
    assert notifier.subscriber_count == 0
    assert notifier.notify("k", None) == 0
    assert seen == []


def test_failing_subscriber_is_skipped(caplog):
    notifier = RefreshNotifier()
    seen = []

    def broken(key, value):
        raise RuntimeError("socket closed")

    notifier.subscribe(broken)
    notifier.subscribe(lambda key, value: seen.append(key))

    assert notifier.notify("default/heatmap:ALL", []) == 1
    assert seen == ["default/heatmap:ALL"]
    assert "subscriber failed" in caplog.text
