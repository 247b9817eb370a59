"""Plan resolution and credit charging."""

from __future__ import annotations

import asyncio
import logging
import math

from ..types import BillingError, PlanTier, UserProfile
from .store import ConversationStore

logger = logging.getLogger(__name__)

MIN_MEMORY_COST = 5
MEMORY_COST_STEP = 5
MEMORY_TOKENS_PER_STEP = 300


def memory_cost(text: str) -> int:
    """Credits for a manual memory: 5 per started 300 tokens (chars/4), minimum 5."""
    tokens = math.ceil(len(text) / 4)
    return max(MIN_MEMORY_COST, math.ceil(tokens / MEMORY_TOKENS_PER_STEP) * MEMORY_COST_STEP)


class BillingService:
    """Fixed per-turn charge from the user's plan, debited atomically in the store."""

    def __init__(
        self,
        store: ConversationStore,
        plans: dict[str, PlanTier],
        default_plan: str = "Guest Pass",
    ) -> None:
        if default_plan not in plans:
            raise ValueError(f"Default plan {default_plan!r} is not configured")
        self.store = store
        self.plans = plans
        self.default_plan = default_plan

    def resolve_plan(self, profile: UserProfile | None) -> PlanTier:
        name = profile.plan if profile and profile.plan else self.default_plan
        plan = self.plans.get(name)
        if plan is None:
            logger.warning("Unknown plan %r, defaulting to %s", name, self.default_plan)
            plan = self.plans[self.default_plan]
        return plan

    async def charge(self, user_id: str, amount: int, reason: str = "turn") -> int:
        """Debit ``amount`` credits or raise BillingError. Returns the amount charged."""
        if amount <= 0:
            return 0
        ok = await asyncio.to_thread(self.store.consume_credits, user_id, amount)
        if not ok:
            logger.info("Insufficient credits for %s: %s requires %d", user_id, reason, amount)
            raise BillingError(amount)
        logger.debug("Charged %s %d credits for %s", user_id, amount, reason)
        return amount

    async def charge_turn(self, user_id: str, plan: PlanTier) -> int:
        return await self.charge(user_id, plan.credit_cost, reason=f"{plan.name} turn")
