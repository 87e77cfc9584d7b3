"""
Parcel Packer
-------------
- Expands an order's {item, quantity} lines into one entry per unit.
- Splits the units over weight-bounded parcels:
    * units sorted by weight, heaviest first (stable on ties);
    * the LAST opened parcel takes the first unit that still fits;
    * when nothing fits, the heaviest remaining unit opens a new parcel.
- Prices parcels with a weight-tier table (inclusive upper bounds, kg → €):
    1 → 1, 5 → 2, 10 → 3, 20 → 5, 30 → 10, above → OverWeightedParcel.
- Assigns palettes by order position (N orders per palette) and one tracking
  code per parcel, fetched strictly one after another.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

# ---------------- Config ----------------
PARCEL_MAX_WEIGHT = 30.0  # kg
MAX_PARCEL_PER_PALETTE = 15  # orders per palette

# (inclusive upper bound in kg, cost in €), ascending
COST_TIERS: List[Tuple[float, float]] = [
    (1.0, 1),
    (5.0, 2),
    (10.0, 3),
    (20.0, 5),
    (30.0, 10),
]


def configure(
    parcel_max_weight: Optional[float] = None,
    max_parcel_per_palette: Optional[int] = None,
    cost_tiers: Optional[Sequence[Sequence[float]]] = None,
) -> None:
    """Override the module defaults. Raises ValueError on inconsistent values.

    The highest cost tier must cover the parcel weight limit, otherwise parcels
    that the packer accepts could not be priced.
    """
    global PARCEL_MAX_WEIGHT, MAX_PARCEL_PER_PALETTE, COST_TIERS
    max_weight = PARCEL_MAX_WEIGHT if parcel_max_weight is None else float(parcel_max_weight)
    per_palette = MAX_PARCEL_PER_PALETTE if max_parcel_per_palette is None else max_parcel_per_palette
    tiers = COST_TIERS if cost_tiers is None else [(float(b), c) for b, c in cost_tiers]

    if isinstance(per_palette, bool) or not isinstance(per_palette, (int, float)) or not float(per_palette).is_integer():
        raise ValueError(f"max_parcel_per_palette must be a whole number (got {per_palette!r}).")
    per_palette = int(per_palette)
    if max_weight <= 0:
        raise ValueError("parcel_max_weight must be > 0.")
    if per_palette < 1:
        raise ValueError("max_parcel_per_palette must be >= 1.")
    if not tiers:
        raise ValueError("cost_tiers must not be empty.")
    bounds = [b for b, _ in tiers]
    if bounds != sorted(bounds) or len(set(bounds)) != len(bounds):
        raise ValueError("cost_tiers bounds must be strictly ascending.")
    if bounds[-1] < max_weight:
        raise ValueError(f"cost_tiers must cover parcel_max_weight ({bounds[-1]:g} < {max_weight:g}).")

    PARCEL_MAX_WEIGHT = max_weight
    MAX_PARCEL_PER_PALETTE = per_palette
    COST_TIERS = list(tiers)


# ---------------- Errors ----------------
class ShippingError(Exception):
    """Base class for failures that abort a dispatch run."""


class ItemNotFound(ShippingError, LookupError):
    def __init__(self, item_id: str) -> None:
        super().__init__(f"No item found with the id: {item_id}")
        self.item_id = item_id


class OverWeightedParcel(ShippingError, ValueError):
    def __init__(self, tracking_id: str, weight: float, max_weight: float) -> None:
        super().__init__(
            f"The parcel {tracking_id} is exceeding the maximum weight authorized "
            f"({weight:g} > {max_weight:g}kg)"
        )
        self.tracking_id = tracking_id
        self.weight = weight
        self.max_weight = max_weight


# ---------------- Models ----------------
@dataclass(frozen=True)
class Item:
    id: str
    name: str
    weight: float


@dataclass(frozen=True)
class OrderLine:
    item: Item
    quantity: int


@dataclass(frozen=True)
class Order:
    id: str
    date: datetime
    lines: Tuple[OrderLine, ...] = ()


@dataclass(frozen=True)
class Parcel:
    order: Order
    palette_id: int
    tracking_id: str
    items: Tuple[Item, ...] = ()


# ---------------- Weight helpers ----------------
def _max_weight(max_weight: Optional[float]) -> float:
    return PARCEL_MAX_WEIGHT if max_weight is None else float(max_weight)


def is_over_weighted(weight: float, max_weight: Optional[float] = None) -> bool:
    return weight > _max_weight(max_weight)


def item_group_weight(items: Iterable[Item]) -> float:
    return sum((it.weight for it in items), 0.0)


def find_item_by_id(item_id: str, catalog: Dict[str, Item]) -> Item:
    item = catalog.get(item_id)
    if item is None:
        raise ItemNotFound(item_id)
    return item


# ---------------- Packing ----------------
def expand_order_items(order: Order) -> List[Item]:
    """One entry per ordered unit, in line order then quantity order."""
    out: List[Item] = []
    for line in order.lines:
        out.extend([line.item] * line.quantity)
    return out


def split_order_over_parcels(order: Order, max_weight: Optional[float] = None) -> List[Tuple[Item, ...]]:
    """Split an order's units into item groups, one group per future parcel.

    Deterministic: same order in, same groups (content and order) out. A group
    with two or more units never exceeds `max_weight`; a unit heavier than the
    limit ends up alone in its own group. An order without units yields a
    single empty group.
    """
    limit = _max_weight(max_weight)
    # sorted() is stable, equal weights keep their expansion order
    remaining = sorted(expand_order_items(order), key=lambda it: -it.weight)
    groups: List[List[Item]] = [[]]

    while remaining:
        group = groups[-1]
        weight = item_group_weight(group)
        index = next(
            (i for i, it in enumerate(remaining) if not is_over_weighted(weight + it.weight, limit)),
            None,
        )
        if index is not None:
            group.append(remaining.pop(index))
        else:
            groups.append([remaining.pop(0)])

    return [tuple(g) for g in groups]


# ---------------- Pricing ----------------
def tiered_cost(weight: float, max_weight: Optional[float] = None, tracking_id: str = "") -> float:
    limit = _max_weight(max_weight)
    if is_over_weighted(weight, limit):
        raise OverWeightedParcel(tracking_id, weight, limit)
    for bound, cost in COST_TIERS:
        if weight <= bound:
            return cost
    # limit configured above the last tier
    raise OverWeightedParcel(tracking_id, weight, COST_TIERS[-1][0])


def parcel_weight(parcel: Parcel) -> float:
    return item_group_weight(parcel.items)


def parcel_cost(parcel: Parcel, max_weight: Optional[float] = None) -> float:
    return tiered_cost(parcel_weight(parcel), max_weight, tracking_id=parcel.tracking_id)


def compute_total_amount(parcels: Iterable[Parcel], max_weight: Optional[float] = None) -> float:
    return sum((parcel_cost(p, max_weight) for p in parcels), 0)


# ---------------- Palettes & tracking ----------------
def palette_id_for_position(position: int, max_parcel_per_palette: Optional[int] = None) -> int:
    per_palette = MAX_PARCEL_PER_PALETTE if max_parcel_per_palette is None else int(max_parcel_per_palette)
    return position // per_palette + 1


def generate_parcels(
    orders: Sequence[Order],
    tracking_code: Callable[[], str],
    max_parcel_per_palette: Optional[int] = None,
    max_weight: Optional[float] = None,
    on_parcel: Optional[Callable[[Parcel], None]] = None,
) -> List[Parcel]:
    """Pack every order and turn each item group into a tracked Parcel.

    Orders are handled one at a time, and `tracking_code()` is called once per
    parcel after its items are final. The provider is rate limited, so calls
    are never batched or run concurrently; any exception it raises aborts the
    whole run.
    """
    parcels: List[Parcel] = []
    for position, order in enumerate(orders):
        palette_id = palette_id_for_position(position, max_parcel_per_palette)
        for items in split_order_over_parcels(order, max_weight):
            parcel = Parcel(order=order, palette_id=palette_id, tracking_id=tracking_code(), items=items)
            parcels.append(parcel)
            if on_parcel is not None:
                on_parcel(parcel)
    return parcels


def palette_summary(parcels: Iterable[Parcel]) -> Dict[int, int]:
    counts: Dict[int, int] = {}
    for p in parcels:
        counts[p.palette_id] = counts.get(p.palette_id, 0) + 1
    return counts
