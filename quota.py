# quota.py
from errors import QuotaExceeded

MAX_REGENERATIONS = 3


class QuotaTracker:
    """Regeneration cap per output item. Stateless: the count lives on the item."""

    def __init__(self, max_regenerations: int = MAX_REGENERATIONS):
        self.max_regenerations = max_regenerations

    def can_regenerate(self, item) -> bool:
        return item.regeneration_count < self.max_regenerations

    def remaining(self, count: int) -> int:
        return max(0, self.max_regenerations - count)

    def next_count(self, item) -> int:
        if not self.can_regenerate(item):
            raise QuotaExceeded("Maximum regeneration limit reached", item.regeneration_count)
        return item.regeneration_count + 1
