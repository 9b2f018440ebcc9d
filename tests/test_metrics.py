from prometheus_client import CollectorRegistry

from limitwatch.metrics import MetricsUpdater
from limitwatch.models import ModelQuota, UsageData


class TestMetricsUpdater:
    def test_update_usage_sets_ratios(self, registry: "CollectorRegistry") -> "None":
        updater = MetricsUpdater(registry=registry)
        updater.update_usage(
            "copilot",
            UsageData(session_used=50, session_limit=200, weekly_used=9, weekly_limit=10),
        )
        assert (
            registry.get_sample_value(
                "limitwatch_session_usage_ratio", {"provider": "copilot"}
            )
            == 0.25
        )
        assert (
            registry.get_sample_value(
                "limitwatch_weekly_usage_ratio", {"provider": "copilot"}
            )
            == 0.9
        )

    def test_zero_limit_leaves_ratio_unset(self, registry: "CollectorRegistry") -> "None":
        updater = MetricsUpdater(registry=registry)
        updater.update_usage("gemini", UsageData(session_used=5))
        assert (
            registry.get_sample_value(
                "limitwatch_session_usage_ratio", {"provider": "gemini"}
            )
            is None
        )

    def test_model_quotas(self, registry: "CollectorRegistry") -> "None":
        updater = MetricsUpdater(registry=registry)
        updater.update_usage(
            "gemini",
            UsageData(model_quotas=[ModelQuota("gemini-2.5-pro", 42.5)]),
        )
        assert (
            registry.get_sample_value(
                "limitwatch_model_quota_percent_left",
                {"provider": "gemini", "model": "gemini-2.5-pro"},
            )
            == 42.5
        )

    def test_refresh_errors_by_kind(self, registry: "CollectorRegistry") -> "None":
        updater = MetricsUpdater(registry=registry)
        updater.inc_refresh_error("claude", "rate_limited")
        updater.inc_refresh_error("claude", "rate_limited")
        assert (
            registry.get_sample_value(
                "limitwatch_refresh_errors_total",
                {"provider": "claude", "kind": "rate_limited"},
            )
            == 2.0
        )

    def test_refresh_duration_and_success(self, registry: "CollectorRegistry") -> "None":
        updater = MetricsUpdater(registry=registry)
        updater.observe_refresh_duration("copilot", 0.5)
        updater.set_last_refresh_success("copilot", 1700000000.0)
        assert (
            registry.get_sample_value(
                "limitwatch_refresh_duration_seconds_count", {"provider": "copilot"}
            )
            == 1.0
        )
        assert (
            registry.get_sample_value(
                "limitwatch_last_refresh_success_timestamp_seconds",
                {"provider": "copilot"},
            )
            == 1700000000.0
        )
