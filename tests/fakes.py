"""Test doubles shared by the test suite."""

from datetime import datetime, timedelta, timezone

from notifications.dispatcher import NotificationDispatcher


class TickingClock:
    """Clock that advances one second on every reading."""

    def __init__(self, start: datetime, step: timedelta = timedelta(seconds=1)):
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now += self.step
        return current

    def today(self):
        return self.now.date()


class RecordingDispatcher(NotificationDispatcher):
    """Keeps every notification instead of sending it."""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    def _send(self, event_kind, subject, actor_id, context) -> None:
        if self.fail:
            raise ConnectionError("notification channel down")
        self.sent.append((event_kind, subject, actor_id, context))

    def kinds(self) -> list:
        return [s[0] for s in self.sent]


START = datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)
