"""
Daily AI spend gate.

Spend is tracked in KRW per business day from provider token usage, in the
cache store counter ``ai:spend:{YYYY-MM-DD}``.
"""
from datetime import datetime
from typing import Optional

import structlog

from backend.core.config import settings
from backend.core.exceptions import CacheUnavailableError
from backend.core.sentry import capture_message
from backend.services.cache import CacheStore
from backend.utils.business_calendar import business_day_key
from engine.cache import keys

logger = structlog.get_logger().bind(component="ai_budget")

# Counters outlive the day so the previous day stays inspectable
SPEND_KEY_TTL_SECONDS = 2 * 24 * 60 * 60


class BudgetGate:
    """Checks and records daily AI spend."""

    def __init__(
        self,
        cache: CacheStore,
        daily_budget_krw: Optional[float] = None,
        alert_ratio: Optional[float] = None,
        input_cost_per_1k: Optional[float] = None,
        output_cost_per_1k: Optional[float] = None,
    ):
        self.cache = cache
        self.daily_budget_krw = daily_budget_krw if daily_budget_krw is not None else settings.ai_daily_budget_krw
        self.alert_ratio = alert_ratio if alert_ratio is not None else settings.ai_budget_alert_ratio
        self.input_cost_per_1k = (
            input_cost_per_1k if input_cost_per_1k is not None else settings.ai_cost_per_1k_input_tokens_krw
        )
        self.output_cost_per_1k = (
            output_cost_per_1k if output_cost_per_1k is not None else settings.ai_cost_per_1k_output_tokens_krw
        )

    def cost_for(self, input_tokens: int, output_tokens: int) -> float:
        return (
            input_tokens / 1000 * self.input_cost_per_1k
            + output_tokens / 1000 * self.output_cost_per_1k
        )

    def spent(self, now: datetime) -> float:
        return self.cache.get_float(keys.ai_spend_key(business_day_key(now)))

    def has_budget(self, now: datetime) -> bool:
        """
        True while today's spend is below the daily budget.

        An unreachable counter denies the call: spend that cannot be
        tracked is not allowed.
        """
        try:
            return self.spent(now) < self.daily_budget_krw
        except CacheUnavailableError as e:
            logger.warning("ai_budget_unavailable", error=str(e))
            return False

    def record_usage(self, input_tokens: int, output_tokens: int, now: datetime) -> float:
        """
        Add the cost of one provider call to today's spend.

        Returns:
            Today's total spend after this call.
        """
        cost = self.cost_for(input_tokens, output_tokens)
        total = self.cache.incrbyfloat(
            keys.ai_spend_key(business_day_key(now)),
            cost,
            ttl_seconds=SPEND_KEY_TTL_SECONDS,
        )

        threshold = self.daily_budget_krw * self.alert_ratio
        if total - cost < threshold <= total:
            logger.warning(
                "ai_budget_threshold_reached",
                spent_krw=round(total, 2),
                budget_krw=self.daily_budget_krw,
                ratio=self.alert_ratio,
            )
            capture_message(
                f"AI budget threshold reached for {business_day_key(now)}",
                level="warning",
                extra={"spent_krw": round(total, 2), "budget_krw": self.daily_budget_krw},
            )
        if total - cost < self.daily_budget_krw <= total:
            logger.error("ai_budget_exhausted", spent_krw=round(total, 2), budget_krw=self.daily_budget_krw)
        return total
