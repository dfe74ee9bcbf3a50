"""Tests for the command-line preview."""

from datetime import UTC, datetime

from agentcron.__main__ import preview, run_preview


class TestPreview:
    def test_next_fire_times(self):
        times = preview("0 9 * * 1-5", "Berlin", 3, after=datetime(2026, 1, 8, 12, 0, tzinfo=UTC))
        assert [t.astimezone(UTC) for t in times] == [
            datetime(2026, 1, 9, 8, 0, tzinfo=UTC),
            datetime(2026, 1, 12, 8, 0, tzinfo=UTC),
            datetime(2026, 1, 13, 8, 0, tzinfo=UTC),
        ]

    def test_prints_resolved_zone(self, capsys):
        assert run_preview(["*/15 * * * *", "--tz", "pst", "-n", "2"]) == 0
        out = capsys.readouterr().out.splitlines()
        assert out[0] == "*/15 * * * * in America/Los_Angeles"
        assert len(out) == 3

    def test_invalid_expression(self, capsys):
        assert run_preview(["every tuesday"]) == 2
        assert "Invalid cron expression" in capsys.readouterr().err
