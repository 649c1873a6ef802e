"""Read-only presentation handle returned by Server.start."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from .engine import ErrorRecord, Status, Test

if TYPE_CHECKING:
    from .scheduler import Server


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def serialize_error(record: ErrorRecord) -> dict[str, Any]:
    return {
        "level": record.level,
        "type": type(record.error).__name__,
        "message": record.message,
        "time": _iso(record.time),
    }


def serialize_test(test: Test, interval_ms: float, detail: bool = False) -> dict[str, Any]:
    """Serialize a test for the presentation layer."""
    pass_rate = round(test.pass_count / test.total_count * 100, 2) if test.total_count else None
    next_test_time = None
    if test.last_test_time is not None:
        next_test_time = test.last_test_time + timedelta(milliseconds=interval_ms)

    data: dict[str, Any] = {
        "id": test.id,
        "name": test.name,
        "collection": test.collection.name if test.collection else None,
        "status": test.status.shortcode,
        "status_label": test.status.label,
        "interval_ms": interval_ms,
        "pass_count": test.pass_count,
        "warn_count": test.warn_count,
        "error_count": test.error_count,
        "total_count": test.total_count,
        "skipped_count": test.skipped_count,
        "pass_rate": pass_rate,
        "last_test_length": test.last_test_length,
        "avg_test_length": round(test.avg_test_length),
        "last_test_time": _iso(test.last_test_time),
        "next_test_time": _iso(next_test_time),
        "last_error_message": test.last_error_message,
        "last_error_time": _iso(test.last_error_time),
    }
    if detail:
        data["errors"] = [serialize_error(r) for r in test.errors]
    return data


class StatusView:
    """Snapshot access to a server's tests for an HTTP/presentation layer."""

    def __init__(self, server: Server) -> None:
        self._server = server

    @property
    def title(self) -> str:
        return self._server.title

    @property
    def started(self) -> bool:
        return self._server.started

    def list_all_tests(self) -> list[Test]:
        return self._server.list_all_tests()

    def find_test_by_id(self, test_id: int | str) -> Test | None:
        return self._server.find_test_by_id(test_id)

    def describe(self, test: Test, detail: bool = False) -> dict[str, Any]:
        return serialize_test(test, self._server.effective_interval(test), detail=detail)

    def summary(self) -> dict[str, Any]:
        """Whole-server status: counts per status, collections and top-level tests."""
        tests = self.list_all_tests()
        counts = {status.shortcode: 0 for status in Status}
        for test in tests:
            counts[test.status.shortcode] += 1

        return {
            "title": self.title,
            "started": self.started,
            "counts": counts,
            "total": len(tests),
            "collections": [
                {
                    "name": c.name,
                    "tests": [self.describe(t) for t in c.tests],
                }
                for c in self._server.collections
            ],
            "tests": [self.describe(t) for t in self._server.tests],
        }
