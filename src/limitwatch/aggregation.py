from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from limitwatch.models import ModelQuota


@dataclass(frozen=True, slots=True)
class QuotaBucket:
    """
    QuotaBucket is one upstream-reported fragment of quota
    for a model. A model may be reported by several buckets,
    e.g. one per token type.
    """

    model_id: "str"
    # 0.0-1.0
    remaining_fraction: "float"
    reset_time: "datetime | None" = None
    token_type: "str | None" = None


@dataclass(frozen=True, slots=True)
class QuotaSummary:
    model_quotas: "list[ModelQuota]"
    overall_percent: "float"
    overall_reset: "datetime | None"


def aggregate_quotas(buckets: "Iterable[QuotaBucket]") -> "QuotaSummary":
    """
    reduces buckets to one ModelQuota per model, keeping the
    bucket with the lowest remaining fraction together with its
    own reset time. The overall percent is the tightest model
    and the overall reset the earliest known reset.
    """
    worst: "dict[str, tuple[float, datetime | None]]" = {}

    for bucket in buckets:
        current = worst.get(bucket.model_id)
        # strictly lower only, so the first bucket seen wins ties
        if current is None or bucket.remaining_fraction < current[0]:
            worst[bucket.model_id] = (bucket.remaining_fraction, bucket.reset_time)

    model_quotas = [
        ModelQuota(model_id=model_id, percent_left=fraction * 100.0, reset_time=reset)
        for model_id, (fraction, reset) in sorted(worst.items())
    ]

    overall_percent = min((q.percent_left for q in model_quotas), default=100.0)
    overall_reset = min(
        (q.reset_time for q in model_quotas if q.reset_time is not None),
        default=None,
    )

    return QuotaSummary(
        model_quotas=model_quotas,
        overall_percent=overall_percent,
        overall_reset=overall_reset,
    )
