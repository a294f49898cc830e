"""Trending/ranking views over the template set. Pure and deterministic for a given ``now``."""

import time
from typing import Dict, List, Mapping, Optional, Sequence

from src.core.service.collectible.models import Template, TrendingScore
from src.infra.config.settings import get_settings

settings = get_settings()

VELOCITY_WEIGHT = 0.5
SCARCITY_WEIGHT = 0.3
URGENCY_WEIGHT = 0.2
TRENDING_THRESHOLD = 0.6
LOW_SUPPLY_SCARCITY = 0.8


class TrendingService:
    """Scores templates by claim velocity, scarcity and time to expiry"""

    def __init__(
        self,
        window_hours: Optional[float] = None,
        velocity_ceiling: Optional[float] = None,
        expiring_soon_days: Optional[float] = None,
    ):
        self.window_hours = window_hours or settings.TRENDING_WINDOW_HOURS
        self.velocity_ceiling = velocity_ceiling or settings.TRENDING_VELOCITY_CEILING
        self.expiring_soon_seconds = (expiring_soon_days or settings.EXPIRING_SOON_DAYS) * 86400

    @staticmethod
    def _now(now: Optional[int]) -> int:
        return int(now if now is not None else time.time())

    def claim_velocity(self, template: Template, now: int, recent_claims: Optional[int] = None) -> float:
        """
        Claims per hour normalised against the ceiling, in [0, 1].

        Uses the trailing-window count when one is known, otherwise lifetime supply per
        hour since start (at least one hour).
        """
        if recent_claims is not None:
            per_hour = recent_claims / self.window_hours
        else:
            started = template.start_time or now
            hours_elapsed = max((now - started) / 3600, 1)
            per_hour = template.current_supply / hours_elapsed
        return min(max(per_hour / self.velocity_ceiling, 0.0), 1.0)

    @staticmethod
    def scarcity(template: Template) -> float:
        if template.max_supply == 0:
            return 0.0
        remaining = template.max_supply - template.current_supply
        return min(max(1 - remaining / template.max_supply, 0.0), 1.0)

    def urgency(self, template: Template, now: int) -> float:
        if template.end_time == 0:
            return 0.0
        remaining = template.end_time - now
        if remaining <= 0:
            return 1.0
        return min(max(1 - remaining / self.expiring_soon_seconds, 0.0), 1.0)

    def _is_expiring_soon(self, template: Template, now: int) -> bool:
        return template.end_time != 0 and template.end_time - now < self.expiring_soon_seconds

    def calculate_trending_scores(
        self,
        templates: Sequence[Template],
        claim_counts: Optional[Mapping[int, int]] = None,
        now: Optional[int] = None,
    ) -> Dict[int, TrendingScore]:
        now = self._now(now)
        scores = {}
        for template in templates:
            # No count for a template means no recent data, not zero claims
            recent = claim_counts.get(template.template_id) if claim_counts is not None else None
            velocity = self.claim_velocity(template, now, recent)
            scarcity = self.scarcity(template)
            urgency = self.urgency(template, now)
            score = velocity * VELOCITY_WEIGHT + scarcity * SCARCITY_WEIGHT + urgency * URGENCY_WEIGHT
            remaining = template.remaining_supply

            scores[template.template_id] = TrendingScore(
                template_id=template.template_id,
                claim_velocity=velocity,
                scarcity=scarcity,
                urgency=urgency,
                score=round(score, 6),
                is_trending=score >= TRENDING_THRESHOLD,
                is_expiring_soon=self._is_expiring_soon(template, now),
                is_low_supply=remaining is not None and remaining > 0 and scarcity > LOW_SUPPLY_SCARCITY,
            )
        return scores

    def get_trending_collectibles(
        self,
        templates: Sequence[Template],
        limit: int = 10,
        claim_counts: Optional[Mapping[int, int]] = None,
        now: Optional[int] = None,
    ) -> List[Template]:
        """Highest claim velocity first; ties go to the larger current supply."""
        now = self._now(now)
        scores = self.calculate_trending_scores(templates, claim_counts, now)
        ranked = sorted(
            templates,
            key=lambda t: (-scores[t.template_id].claim_velocity, -t.current_supply, t.template_id),
        )
        return ranked[:limit]

    def get_expiring_soon_collectibles(
        self,
        templates: Sequence[Template],
        limit: int = 10,
        now: Optional[int] = None,
        include_ended: bool = True,
    ) -> List[Template]:
        """
        Bounded templates ending within the horizon, soonest first.

        Templates that already ended sort first; ``include_ended=False`` drops them.
        """
        now = self._now(now)
        expiring = [
            t for t in templates
            if self._is_expiring_soon(t, now) and (include_ended or t.end_time > now)
        ]
        expiring.sort(key=lambda t: (t.end_time, t.template_id))
        return expiring[:limit]

    def get_low_supply_collectibles(self, templates: Sequence[Template], limit: int = 10) -> List[Template]:
        """Bounded templates that can still be claimed, fewest remaining first."""
        low = [t for t in templates if t.max_supply != 0 and t.max_supply - t.current_supply > 0]
        low.sort(key=lambda t: (t.max_supply - t.current_supply, t.template_id))
        return low[:limit]
