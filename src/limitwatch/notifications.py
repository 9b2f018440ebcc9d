from typing import Protocol

import structlog

from limitwatch.dedup import NotificationTracker
from limitwatch.models import UsageData

logger = structlog.get_logger()

SESSION_WARNING_RATIO = 0.80
WEEKLY_WARNING_RATIO = 0.90


class NotificationSink(Protocol):
    """
    NotificationSink delivers user-facing notifications.
    Delivery is fire-and-forget.
    """

    def send_warning(self, title: "str", body: "str") -> "None": ...

    def send_error(self, title: "str", body: "str") -> "None": ...

    def send_info(self, title: "str", body: "str") -> "None": ...


class LoggingNotificationSink:
    """
    writes notifications to the log, for headless runs.
    """

    def send_warning(self, title: "str", body: "str") -> "None":
        logger.warning("notification", title=title, body=body)

    def send_error(self, title: "str", body: "str") -> "None":
        logger.error("notification", title=title, body=body)

    def send_info(self, title: "str", body: "str") -> "None":
        logger.info("notification", title=title, body=body)


def usage_warnings(provider_id: "str", usage: "UsageData") -> "list[tuple[str, str]]":
    """
    returns the (title, body) warnings the given usage deserves.
    Session usage warns from 80%, weekly usage from 90%. A zero
    limit never warns.
    """
    warnings: "list[tuple[str, str]]" = []

    session = usage.session_ratio()
    if session is not None and session >= SESSION_WARNING_RATIO:
        warnings.append(
            (
                f"{provider_id} Usage Warning",
                f"Session usage at {session * 100:.0f}% "
                f"({usage.session_used}/{usage.session_limit})",
            )
        )

    weekly = usage.weekly_ratio()
    if weekly is not None and weekly >= WEEKLY_WARNING_RATIO:
        warnings.append(
            (
                f"{provider_id} Weekly Limit",
                f"Weekly usage at {weekly * 100:.0f}%",
            )
        )

    return warnings


class ThresholdNotifier:
    """
    ThresholdNotifier raises usage warnings through a sink,
    sending each distinct warning at most once until its
    tracker is reset.
    """

    def __init__(
        self,
        sink: "NotificationSink",
        tracker: "NotificationTracker | None" = None,
    ) -> "None":
        self._sink = sink
        self._tracker = tracker if tracker is not None else NotificationTracker()

    def warn(self, title: "str", body: "str") -> "bool":
        """
        sends a warning unless the same one was already sent.
        Returns True if the sink was called.
        """
        if not self._tracker.mark_if_new(title, body):
            return False

        try:
            self._sink.send_warning(title, body)
        except Exception:
            logger.exception("notification_send_failed", title=title)
        return True

    def check_usage(self, provider_id: "str", usage: "UsageData") -> "int":
        """
        warns for every threshold the usage crosses. Returns the
        number of notifications actually sent.
        """
        sent = 0
        for title, body in usage_warnings(provider_id, usage):
            if self.warn(title, body):
                sent += 1
        return sent

    def reset(self) -> "None":
        self._tracker.reset()
