import threading


class NotificationTracker:
    """
    NotificationTracker: Is a thread-safe store for tracking
    notifications already sent in this process.

    Prevents repeating the same warning every refresh cycle by
    keeping a set of keys built from the notification's title
    and body. Nothing in the core clears it; an owner may call
    reset() (e.g. once a day) to allow repeats again.
    """

    def __init__(self) -> "None":
        self._lock: "threading.Lock" = threading.Lock()
        self._sent: "set[str]" = set()

    @staticmethod
    def make_key(title: "str", body: "str") -> "str":
        """
        constructs the dedup key for a notification.
        """
        return f"{title}:{body}"

    def was_sent(self, title: "str", body: "str") -> "bool":
        with self._lock:
            return self.make_key(title, body) in self._sent

    def mark_if_new(self, title: "str", body: "str") -> "bool":
        """
        checks if the given notification is new. If so, mark it as
        sent and returns True.
        """
        key = self.make_key(title, body)
        with self._lock:
            if key in self._sent:
                return False

            self._sent.add(key)
            return True

    def reset(self) -> "None":
        with self._lock:
            self._sent.clear()
