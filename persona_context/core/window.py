"""Recency window selection and final conversation payload building."""

from __future__ import annotations

import logging
from typing import Callable

from ..token_counter import estimate_tokens
from ..types import ConversationPlan, Message, RecencyWindow

logger = logging.getLogger(__name__)

ROLE_MAP = {"user": "user", "ai": "assistant"}


def select_recency_window(
    history: list[Message],
    token_budget: int,
    max_pairs: int = 5,
    token_counter: Callable[[str], int] | None = None,
) -> RecencyWindow:
    """Pick the newest user/AI pairs that fit ``token_budget``.

    Walks newest to oldest. Every candidate is checked against the remaining
    budget before it is added. An AI message counts as one pair and pulls in
    the nearest earlier user message when that fits and is not yet included.
    Placeholders never enter the window.
    """
    counter = token_counter or estimate_tokens
    candidates = sorted(
        (m for m in history if not m.is_placeholder),
        key=lambda m: m.ordinal,
        reverse=True,
    )

    selected: dict[str, Message] = {}
    tokens_used = 0
    pairs = 0
    ceiling_reached = False

    for idx, message in enumerate(candidates):
        if pairs >= max_pairs:
            break
        if message.id in selected:
            continue

        cost = counter(message.content)
        if tokens_used + cost > token_budget:
            ceiling_reached = True
            logger.debug(
                "Window token budget reached at %d/%d after %d pairs",
                tokens_used + cost, token_budget, pairs,
            )
            break

        selected[message.id] = message
        tokens_used += cost

        if message.is_ai:
            partner = next(
                (m for m in candidates[idx + 1:] if m.role == "user"),
                None,
            )
            if partner is not None and partner.id not in selected:
                partner_cost = counter(partner.content)
                if tokens_used + partner_cost <= token_budget:
                    selected[partner.id] = partner
                    tokens_used += partner_cost
            pairs += 1

    messages = sorted(selected.values(), key=lambda m: m.ordinal)
    return RecencyWindow(
        messages=messages,
        dropped_count=len(candidates) - len(messages),
        tokens_used=tokens_used,
        ceiling_reached=ceiling_reached,
    )


def build_conversation(
    system_prompt: str,
    window: RecencyWindow,
    user_message: str,
    max_context_tokens: int,
    token_counter: Callable[[str], int] | None = None,
) -> ConversationPlan:
    """Assemble ``[system, *window, user]`` and trim oldest history to fit.

    The system prompt and the current user message are never removed.
    """
    counter = token_counter or estimate_tokens
    history = [
        {"role": ROLE_MAP.get(m.role, m.role), "content": m.content}
        for m in window.messages
    ]

    system_tokens = counter(system_prompt)
    user_tokens = counter(user_message)
    history_costs = [counter(h["content"]) for h in history]
    total = system_tokens + user_tokens + sum(history_costs)

    trimmed = 0
    while history and total > max_context_tokens:
        history.pop(0)
        total -= history_costs.pop(0)
        trimmed += 1

    if trimmed:
        logger.warning(
            "Context exceeded %d tokens, trimmed %d oldest history messages",
            max_context_tokens, trimmed,
        )

    return ConversationPlan(
        messages=[
            {"role": "system", "content": system_prompt},
            *history,
            {"role": "user", "content": user_message},
        ],
        total_tokens=total,
        dropped_count=window.dropped_count + trimmed,
        trimmed_count=trimmed,
    )
