"""Tests for recency window selection and conversation building."""

from conftest import make_history

from persona_context.core.window import build_conversation, select_recency_window
from persona_context.types import Message, RecencyWindow


class TestSelectRecencyWindow:
    def test_empty_history(self):
        window = select_recency_window([], token_budget=1000)
        assert window.messages == []
        assert window.dropped_count == 0
        assert not window.ceiling_reached

    def test_pair_cap(self):
        history = make_history(10)
        window = select_recency_window(history, token_budget=10_000, max_pairs=5)
        assert [m.ordinal for m in window.messages] == list(range(11, 21))
        assert window.dropped_count == 10
        assert not window.ceiling_reached

    def test_chronological_order(self):
        window = select_recency_window(make_history(3), token_budget=10_000)
        ordinals = [m.ordinal for m in window.messages]
        assert ordinals == sorted(ordinals)

    def test_token_budget_stops_selection(self):
        # every message in make_history(10) costs 3 estimated tokens
        history = make_history(10)
        window = select_recency_window(history, token_budget=9, max_pairs=5)
        assert [m.ordinal for m in window.messages] == [18, 19, 20]
        assert window.tokens_used == 9
        assert window.ceiling_reached
        assert window.dropped_count == 17

    def test_budget_never_exceeded(self):
        history = make_history(8, content_size=40)
        for budget in (0, 50, 120, 400):
            window = select_recency_window(history, token_budget=budget)
            assert window.tokens_used <= budget

    def test_placeholders_excluded(self):
        history = make_history(2)
        history.append(Message("conv-1", 5, "user", "new question"))
        history.append(Message("conv-1", 6, "ai", "", is_placeholder=True))
        window = select_recency_window(history, token_budget=10_000)
        assert all(not m.is_placeholder for m in window.messages)
        assert window.messages[-1].ordinal == 5

    def test_custom_counter(self):
        window = select_recency_window(make_history(3), token_budget=4, token_counter=lambda t: 1)
        assert len(window.messages) == 4
        assert window.ceiling_reached


class TestBuildConversation:
    def test_layout_and_roles(self):
        window = select_recency_window(make_history(2), token_budget=10_000)
        plan = build_conversation("sys", window, "hello", max_context_tokens=10_000)
        roles = [m["role"] for m in plan.messages]
        assert roles == ["system", "user", "assistant", "user", "assistant", "user"]
        assert plan.messages[0]["content"] == "sys"
        assert plan.messages[-1]["content"] == "hello"
        assert plan.trimmed_count == 0

    def test_trims_oldest_history_to_fit(self):
        window = select_recency_window(make_history(2), token_budget=10_000)
        # system 2 + user 2 + 4 history messages * 3 = 16
        plan = build_conversation("sys", window, "hello", max_context_tokens=10)
        assert plan.trimmed_count == 2
        assert plan.total_tokens == 10
        assert [m["content"] for m in plan.messages[1:-1]] == ["user 2", "ai 2"]
        assert plan.dropped_count == window.dropped_count + 2

    def test_system_and_user_never_removed(self):
        window = select_recency_window(make_history(2), token_budget=10_000)
        plan = build_conversation("sys", window, "hello", max_context_tokens=1)
        assert [m["role"] for m in plan.messages] == ["system", "user"]
        assert plan.trimmed_count == 4

    def test_empty_window(self):
        plan = build_conversation("sys", RecencyWindow(), "hello", max_context_tokens=100)
        assert len(plan.messages) == 2
        assert plan.dropped_count == 0
