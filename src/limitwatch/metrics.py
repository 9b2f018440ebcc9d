from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram

from limitwatch.models import UsageData


class MetricsUpdater:
    """
    applies refresh outcomes and UsageData to Prometheus metrics.
     - refresh_duration_seconds: time spent in fetch_usage, by
     provider.
     - refresh_errors_total: failed refreshes, by provider and
     error kind.
     - session/weekly_usage_ratio: used/limit, only for providers
     that report that limit.
     - model_quota_percent_left: per-model quota left.
    """

    def __init__(self, registry: "CollectorRegistry" = REGISTRY) -> "None":
        self._registry: "CollectorRegistry" = registry
        self._refresh_duration: "Histogram" = Histogram(
            "limitwatch_refresh_duration_seconds",
            "Duration of provider usage refreshes",
            ["provider"],
            registry=registry,
        )
        self._refresh_errors: "Counter" = Counter(
            "limitwatch_refresh_errors_total",
            "Total number of failed refreshes by provider and error kind",
            ["provider", "kind"],
            registry=registry,
        )
        self._last_refresh_success: "Gauge" = Gauge(
            "limitwatch_last_refresh_success_timestamp_seconds",
            "Unix timestamp of last successful refresh per provider",
            ["provider"],
            registry=registry,
        )
        self._session_ratio: "Gauge" = Gauge(
            "limitwatch_session_usage_ratio",
            "Session usage divided by session limit",
            ["provider"],
            registry=registry,
        )
        self._weekly_ratio: "Gauge" = Gauge(
            "limitwatch_weekly_usage_ratio",
            "Weekly usage divided by weekly limit",
            ["provider"],
            registry=registry,
        )
        self._model_quota: "Gauge" = Gauge(
            "limitwatch_model_quota_percent_left",
            "Percent of quota left per model",
            ["provider", "model"],
            registry=registry,
        )

    def update_usage(self, provider: "str", usage: "UsageData") -> "None":
        """
        updates the usage gauges from a fresh UsageData. Ratios are
        only set when the provider reports a limit.
        """
        session = usage.session_ratio()
        if session is not None:
            self._session_ratio.labels(provider=provider).set(session)
        weekly = usage.weekly_ratio()
        if weekly is not None:
            self._weekly_ratio.labels(provider=provider).set(weekly)

        for quota in usage.model_quotas or []:
            self._model_quota.labels(provider=provider, model=quota.model_id).set(
                quota.percent_left
            )

    def observe_refresh_duration(
        self, provider: "str", duration_seconds: "float"
    ) -> "None":
        self._refresh_duration.labels(provider=provider).observe(duration_seconds)

    def inc_refresh_error(self, provider: "str", kind: "str") -> "None":
        self._refresh_errors.labels(provider=provider, kind=kind).inc()

    def set_last_refresh_success(self, provider: "str", timestamp: "float") -> "None":
        self._last_refresh_success.labels(provider=provider).set(timestamp)
