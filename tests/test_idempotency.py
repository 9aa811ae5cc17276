"""Tests for CommandIdempotencyGuard."""

from datetime import datetime, timedelta, timezone

from printops_agent.core.idempotency import (
    CommandDisposition,
    CommandIdempotencyGuard,
    ProcessedCommand,
)
from printops_agent.core.models import CommandResult


class TestCommandIdempotencyGuard:
    """Unit tests for the idempotency guard."""

    def test_first_sighting_executes(self):
        guard = CommandIdempotencyGuard(ttl_hours=24)

        assert guard.begin(7) is CommandDisposition.EXECUTE

    def test_in_flight_duplicate_is_dropped(self):
        guard = CommandIdempotencyGuard(ttl_hours=24)
        guard.begin(7)

        assert guard.begin(7) is CommandDisposition.DROP

    def test_int_and_str_ids_are_the_same_command(self):
        guard = CommandIdempotencyGuard(ttl_hours=24)
        guard.begin(7)

        assert guard.begin("7") is CommandDisposition.DROP

    def test_delivered_duplicate_is_dropped(self):
        guard = CommandIdempotencyGuard(ttl_hours=24)
        guard.begin("cmd-1")
        guard.complete("cmd-1", CommandResult(success=True))
        guard.mark_delivered("cmd-1")

        assert guard.begin("cmd-1") is CommandDisposition.DROP

    def test_undelivered_result_is_redelivered(self):
        guard = CommandIdempotencyGuard(ttl_hours=24)
        result = CommandResult(success=False, message="Command failed: boom")
        guard.begin("cmd-1")
        guard.complete("cmd-1", result)
        guard.mark_delivered("cmd-1", False)

        assert guard.begin("cmd-1") is CommandDisposition.REDELIVER
        assert guard.get_cached_result("cmd-1") is result

    def test_get_cached_result_returns_none_for_unknown(self):
        guard = CommandIdempotencyGuard(ttl_hours=24)

        assert guard.get_cached_result("unknown-cmd") is None

    def test_expired_entry_executes_again(self):
        guard = CommandIdempotencyGuard(ttl_hours=1)
        guard.begin("old")
        guard.complete("old", CommandResult(success=True))
        guard._entries["old"].received_at = datetime.now(timezone.utc) - timedelta(
            hours=2
        )

        assert guard.get_cached_result("old") is None
        assert guard.begin("old") is CommandDisposition.EXECUTE

    def test_cleanup_removes_expired_entries(self):
        guard = CommandIdempotencyGuard(ttl_hours=1, cleanup_interval=1)
        guard._entries["stale"] = ProcessedCommand(
            command_id="stale",
            received_at=datetime.now(timezone.utc) - timedelta(hours=3),
        )

        guard.begin("fresh")

        assert "stale" not in guard._entries
        assert guard.entry_count == 1

    def test_max_entries_evicts_oldest_completed(self):
        guard = CommandIdempotencyGuard(ttl_hours=24, max_entries=4)
        for index in range(4):
            guard.begin(index)
            guard.complete(index, CommandResult(success=True))

        guard.begin("next")

        assert guard.entry_count <= 4
        assert guard.get_cached_result(0) is None

    def test_clear(self):
        guard = CommandIdempotencyGuard()
        guard.begin(1)
        guard.clear()

        assert guard.entry_count == 0

    def test_duplicate_during_redelivery_is_dropped(self):
        guard = CommandIdempotencyGuard(ttl_hours=24)
        guard.begin("cmd-1")
        guard.complete("cmd-1", CommandResult(success=True))
        guard.mark_delivered("cmd-1", False)

        assert guard.begin("cmd-1") is CommandDisposition.REDELIVER
        assert guard.begin("cmd-1") is CommandDisposition.DROP

        guard.mark_delivered("cmd-1", False)

        assert guard.begin("cmd-1") is CommandDisposition.REDELIVER

    def test_duplicate_during_first_delivery_is_dropped(self):
        guard = CommandIdempotencyGuard(ttl_hours=24)
        guard.begin("cmd-2")
        guard.complete("cmd-2", CommandResult(success=True))

        assert guard.begin("cmd-2") is CommandDisposition.DROP
