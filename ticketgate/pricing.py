import json
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal


@dataclass(frozen=True)
class PriceRange:
    start: date
    end: date
    price: Decimal

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end


@dataclass(frozen=True)
class PriceSchedule:
    """Ordered, non-overlapping date ranges mapped to a unit price."""

    ranges: tuple[PriceRange, ...]
    default_price: Decimal

    def __post_init__(self):
        for r in self.ranges:
            if r.end < r.start:
                raise ValueError(f"price range ends before it starts: {r.start} > {r.end}")
        ordered = sorted(self.ranges, key=lambda r: r.start)
        for prev, cur in zip(ordered, ordered[1:]):
            if cur.start <= prev.end:
                raise ValueError(f"price ranges overlap: {prev.start}..{prev.end} and {cur.start}..{cur.end}")

    def unit_price_for(self, day: date) -> Decimal:
        # date-only comparison, time of day never matters
        if isinstance(day, datetime):
            day = day.date()
        for r in self.ranges:
            if r.contains(day):
                return r.price
        return self.default_price


DEFAULT_RANGES = (
    PriceRange(date(2025, 11, 11), date(2025, 11, 17), Decimal("500")),
    PriceRange(date(2025, 11, 18), date(2025, 11, 23), Decimal("750")),
    PriceRange(date(2025, 11, 24), date(2025, 12, 10), Decimal("900")),
    PriceRange(date(2025, 12, 11), date(2025, 12, 28), Decimal("1200")),
)


def parse_price_ranges(items: list[dict]) -> tuple[PriceRange, ...]:
    out = []
    for item in items:
        try:
            out.append(PriceRange(
                start=date.fromisoformat(str(item["start"])),
                end=date.fromisoformat(str(item["end"])),
                price=Decimal(str(item["price"])),
            ))
        except (KeyError, ValueError, ArithmeticError) as e:
            raise ValueError(f"invalid price range {item!r}: {e}") from e
    return tuple(out)


def load_price_schedule(raw: str | None = None, path: str | None = None,
                        default_price: Decimal = Decimal("1000")) -> PriceSchedule:
    """Build the schedule from a JSON string, a JSON file, or the built-in ranges.

    The JSON form is a list of ``{"start": "YYYY-MM-DD", "end": "YYYY-MM-DD", "price": 500}``.
    """
    if path:
        with open(path, encoding="utf-8") as f:
            raw = f.read()
    if raw:
        items = json.loads(raw)
        if not isinstance(items, list):
            raise ValueError("price schedule must be a JSON list")
        return PriceSchedule(ranges=parse_price_ranges(items), default_price=default_price)
    return PriceSchedule(ranges=DEFAULT_RANGES, default_price=default_price)
