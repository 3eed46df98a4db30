"""Partner selection among the eligible set."""
from __future__ import annotations

from datetime import date
from typing import Optional, Sequence, Tuple

from core.models import Partner, PartnerType
from core.utils import week_start


class AssignmentSelector:
    """
    Strict tier priority, then load balancing.

    Exclusive partners win whenever any is eligible. Within the tier the
    partner with the fewest leads this week is chosen, ties going to the
    lowest partner id.
    """

    @staticmethod
    def partition(partners: Sequence[Partner]) -> Tuple[list[Partner], list[Partner]]:
        exclusive = [p for p in partners if p.partner_type == PartnerType.EXCLUSIVE.value]
        basic = [p for p in partners if p.partner_type != PartnerType.EXCLUSIVE.value]
        return exclusive, basic

    def select_partner(
        self,
        eligible: Sequence[Partner],
        current_week: Optional[date] = None,
    ) -> Optional[Partner]:
        if not eligible:
            return None

        current_week = current_week or week_start()
        exclusive, basic = self.partition(eligible)
        tier = exclusive or basic
        return min(tier, key=lambda p: (p.weekly_leads_for(current_week), p.id))


__all__ = ["AssignmentSelector"]
