"""Tests for prompt template resolution."""

from datetime import UTC, datetime
from zoneinfo import ZoneInfo

from agentcron.scheduling.templates import builtin_variables, resolve_prompt, unresolved_tokens

FIXED = datetime(2026, 3, 4, 8, 30, tzinfo=UTC)  # a Wednesday


class TestBuiltins:
    def test_dates(self):
        values = builtin_variables(FIXED)
        assert values["TODAY"] == "2026-03-04"
        assert values["YESTERDAY"] == "2026-03-03"
        assert values["LAST_7_DAYS"] == "2026-02-25 to 2026-03-04"
        assert values["LAST_30_DAYS"] == "2026-02-02 to 2026-03-04"
        assert values["WEEKDAY"] == "Wednesday"
        assert values["MONTH"] == "March"

    def test_now_is_iso_timestamp(self):
        assert builtin_variables(FIXED)["NOW"] == "2026-03-04T08:30:00+00:00"

    def test_defaults_for_missing_context(self):
        values = builtin_variables(FIXED)
        assert values["AGENT_NAME"] == "Agent"
        assert values["LAST_RUN"] == "Never"

    def test_last_run(self):
        last = datetime(2026, 3, 3, 9, 0, tzinfo=UTC)
        assert builtin_variables(FIXED, last_run_at=last)["LAST_RUN"] == "2026-03-03T09:00:00+00:00"

    def test_dates_follow_the_clock_timezone(self):
        # 12:30 UTC on the 4th is already the 5th in Auckland (UTC+13 in March).
        local = datetime(2026, 3, 4, 12, 30, tzinfo=UTC).astimezone(ZoneInfo("Pacific/Auckland"))
        values = builtin_variables(local)
        assert values["TODAY"] == "2026-03-05"
        assert values["WEEKDAY"] == "Thursday"


class TestResolvePrompt:
    def test_deterministic(self):
        template = "Today is {{TODAY}}, agent is {{AGENT_NAME}}"
        first = resolve_prompt(template, {}, FIXED, agent_name="Ada")
        second = resolve_prompt(template, {}, FIXED, agent_name="Ada")
        assert first == second == "Today is 2026-03-04, agent is Ada"

    def test_user_variables(self):
        result = resolve_prompt("Report on {{TOPIC}} for {{TEAM}}", {"TOPIC": "sales", "TEAM": "EMEA"}, FIXED)
        assert result == "Report on sales for EMEA"

    def test_builtins_win_over_user_variables(self):
        result = resolve_prompt("{{TODAY}}", {"TODAY": "someday"}, FIXED)
        assert result == "2026-03-04"

    def test_unknown_tokens_left_verbatim(self):
        result = resolve_prompt("Hello {{UNKNOWN}} on {{WEEKDAY}}", {}, FIXED)
        assert result == "Hello {{UNKNOWN}} on Wednesday"

    def test_repeated_tokens_all_replaced(self):
        assert resolve_prompt("{{X}}-{{X}}", {"X": "a"}, FIXED) == "a-a"

    def test_no_variables(self):
        assert resolve_prompt("plain text", None, FIXED) == "plain text"


class TestUnresolvedTokens:
    def test_lists_leftovers(self):
        assert unresolved_tokens("a {{FOO}} b {{ BAR }}") == ["FOO", "BAR"]

    def test_empty_when_fully_resolved(self):
        assert unresolved_tokens(resolve_prompt("{{TODAY}}", {}, FIXED)) == []
