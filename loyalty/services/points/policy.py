"""Tier table and points award rules.

Both classes are pure: they hold only the immutable `LoyaltyConfig` values
they were built from and never touch storage or the environment.
"""

from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal

from loyalty.common.config import LoyaltyConfig


def _floor(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_FLOOR))


@dataclass(frozen=True)
class Tier:
    """One band of the tier table; `threshold` is an inclusive lower bound."""

    name: str
    threshold: int
    multiplier: Decimal
    rank: int

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "threshold": self.threshold,
            "multiplier": str(self.multiplier),
            "rank": self.rank,
        }


class TierPolicy:
    """Maps a cumulative point total to its tier."""

    def __init__(self, table) -> None:
        rows = sorted(table, key=lambda row: row[1])
        if not rows:
            raise ValueError("tier table must not be empty")
        if rows[0][1] != 0:
            raise ValueError("lowest tier threshold must be 0")
        thresholds = [row[1] for row in rows]
        if len(set(thresholds)) != len(thresholds):
            raise ValueError("tier thresholds must be strictly ascending")
        self.tiers: tuple[Tier, ...] = tuple(
            Tier(name=name, threshold=int(threshold), multiplier=Decimal(str(multiplier)), rank=rank)
            for rank, (name, threshold, multiplier) in enumerate(rows)
        )
        self._by_name = {tier.name.lower(): tier for tier in self.tiers}

    @classmethod
    def from_config(cls, config: LoyaltyConfig) -> "TierPolicy":
        return cls(config.tier_table)

    @property
    def lowest(self) -> Tier:
        return self.tiers[0]

    def tier_for(self, total_points: int) -> Tier:
        """Highest tier whose threshold is <= total; negatives land in the lowest."""

        current = self.tiers[0]
        for tier in self.tiers[1:]:
            if total_points >= tier.threshold:
                current = tier
            else:
                break
        return current

    def next_tier(self, total_points: int) -> Tier | None:
        current = self.tier_for(total_points)
        if current.rank + 1 < len(self.tiers):
            return self.tiers[current.rank + 1]
        return None

    def points_to_next_tier(self, total_points: int) -> int:
        upcoming = self.next_tier(total_points)
        if upcoming is None:
            return 0
        return upcoming.threshold - total_points

    def by_name(self, name: str) -> Tier:
        try:
            return self._by_name[name.lower()]
        except KeyError:
            raise ValueError(f"Unknown tier: {name}") from None


class PointsCalculator:
    """Integer point award for one order.

    Every step floors, so the award is monotonic in `amount` and reproducible
    across processes: base -> tier multiplier -> bonus multiplier, then the
    minimum-amount gate.
    """

    def __init__(self, config: LoyaltyConfig) -> None:
        self.points_per_unit = Decimal(config.points_per_unit)
        self.bonus_multiplier = Decimal(config.bonus_multiplier)
        self.min_qualifying_amount = Decimal(config.min_qualifying_amount)
        self.bonus_applies_tier_multiplier = config.bonus_applies_tier_multiplier

    def award(self, amount: Decimal, tier: Tier, bonus_channel: bool = False) -> int:
        amount = Decimal(amount)
        if amount < 0:
            raise ValueError("amount must be non-negative")
        if amount < self.min_qualifying_amount:
            return 0

        base = _floor(amount * self.points_per_unit)
        if bonus_channel and not self.bonus_applies_tier_multiplier:
            return _floor(base * self.bonus_multiplier)

        tiered = _floor(base * tier.multiplier)
        if bonus_channel:
            return _floor(tiered * self.bonus_multiplier)
        return tiered
