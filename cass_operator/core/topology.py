"""
Rack and seed topology planner.

Pure functions mapping the declared racks, the existing node slots and the
desired size to a target placement and a seed set. No I/O, no side effects,
and the result does not depend on the order of ``current_slots``.

Placement rules:
- every rack targets ``size // n`` nodes, the first ``size % n`` racks one more
- existing slots are kept; only the delta moves
- additions go to the least populated rack below target (ties: declaration order)
- removals come from the most populated rack above target (ties: highest
  ordinal, then later declaration), highest ordinal first

Seed rules:
- the lowest ordinal target slot of every rack is a seed
- below 3 seeds, more are taken round-robin over racks in declaration order
- only slots that joined the ring are labelled seeds, see ``select_live_seeds``

Usage:
    >>> plan = plan_topology(["r1", "r2"], [SlotRef(rack="r1", ordinal=0)], size=3)
    >>> plan.target_counts
    {'r1': 2, 'r2': 1}
    >>> [str(s) for s in plan.additions]
    ['r2-0', 'r1-1']
"""
from typing import Dict, Iterable, List, Sequence

from pydantic import BaseModel, ConfigDict, Field

from cass_operator.models.datacenter import DEFAULT_RACK_NAME
from cass_operator.models.node import SlotRef

MIN_SEEDS = 3


class TopologyPlan(BaseModel):
    """Target placement for one datacenter."""

    model_config = ConfigDict(frozen=True)

    racks: List[str]
    target_counts: Dict[str, int]
    target_slots: List[SlotRef] = Field(default_factory=list)
    additions: List[SlotRef] = Field(default_factory=list)
    removals: List[SlotRef] = Field(default_factory=list)
    seeds: List[SlotRef] = Field(default_factory=list)

    @property
    def has_placement_delta(self) -> bool:
        return bool(self.additions or self.removals)

    def is_seed(self, slot: SlotRef) -> bool:
        return slot in self.seeds


def normalize_racks(racks: Sequence[str]) -> List[str]:
    """An empty rack list means the single implicit default rack."""
    return list(racks) if racks else [DEFAULT_RACK_NAME]


def split_racks(size: int, rack_count: int) -> List[int]:
    """Per-rack node counts, in declaration order, differing by at most one."""
    base, remainder = divmod(size, rack_count)
    return [base + (1 if i < remainder else 0) for i in range(rack_count)]


def find_orphaned_racks(racks: Sequence[str], current_slots: Iterable[SlotRef]) -> List[str]:
    """Racks holding slots that the rack list no longer declares."""
    declared = set(normalize_racks(racks))
    return sorted({slot.rack for slot in current_slots if slot.rack not in declared})


def _lowest_free_ordinal(ordinals: Iterable[int]) -> int:
    taken = set(ordinals)
    ordinal = 0
    while ordinal in taken:
        ordinal += 1
    return ordinal


def select_seeds(racks: Sequence[str], slots: Iterable[SlotRef]) -> List[SlotRef]:
    """
    Seed set over ``slots``.

    One seed per rack (its lowest ordinal), then round-robin over racks in
    declaration order until MIN_SEEDS or every slot is a seed.
    """
    by_rack: Dict[str, List[SlotRef]] = {rack: [] for rack in racks}
    for slot in slots:
        by_rack.setdefault(slot.rack, []).append(slot)
    for members in by_rack.values():
        members.sort(key=lambda s: s.ordinal)

    seeds: List[SlotRef] = [members[0] for members in by_rack.values() if members]

    depth = 1
    total = sum(len(members) for members in by_rack.values())
    while len(seeds) < min(MIN_SEEDS, total):
        for members in by_rack.values():
            if len(seeds) >= MIN_SEEDS:
                break
            if depth < len(members):
                seeds.append(members[depth])
        depth += 1

    return seeds


def plan_topology(
    racks: Sequence[str],
    current_slots: Iterable[SlotRef],
    size: int,
) -> TopologyPlan:
    """
    Compute the target placement and seed set.

    Args:
        racks: Declared rack names, in declaration order (empty means default)
        current_slots: Slots that exist now; slots in undeclared racks are ignored
        size: Desired number of nodes

    Returns:
        TopologyPlan with target counts, target slots, ordered additions and
        removals, and seeds
    """
    racks = normalize_racks(racks)
    order = {rack: index for index, rack in enumerate(racks)}
    targets = dict(zip(racks, split_racks(size, len(racks))))

    planned: Dict[str, List[int]] = {rack: [] for rack in racks}
    for slot in current_slots:
        if slot.rack in planned:
            planned[slot.rack].append(slot.ordinal)
    for ordinals in planned.values():
        ordinals.sort()

    additions: List[SlotRef] = []
    while True:
        below = [rack for rack in racks if len(planned[rack]) < targets[rack]]
        if not below:
            break
        rack = min(below, key=lambda r: (len(planned[r]), order[r]))
        ordinal = _lowest_free_ordinal(planned[rack])
        planned[rack].append(ordinal)
        planned[rack].sort()
        additions.append(SlotRef(rack=rack, ordinal=ordinal))

    removals: List[SlotRef] = []
    while True:
        above = [rack for rack in racks if len(planned[rack]) > targets[rack]]
        if not above:
            break
        rack = max(above, key=lambda r: (len(planned[r]), planned[r][-1], order[r]))
        ordinal = planned[rack].pop()
        removals.append(SlotRef(rack=rack, ordinal=ordinal))

    target_slots = [
        SlotRef(rack=rack, ordinal=ordinal)
        for rack in racks
        for ordinal in planned[rack]
    ]

    return TopologyPlan(
        racks=racks,
        target_counts=targets,
        target_slots=target_slots,
        additions=additions,
        removals=removals,
        seeds=select_seeds(racks, target_slots),
    )


def select_live_seeds(plan: TopologyPlan, joined: Iterable[SlotRef]) -> List[SlotRef]:
    """
    Seed set restricted to target slots that have joined the ring.

    A bootstrapping node must never be a seed, or it skips streaming. The
    only exception is the first node of an empty datacenter, which seeds
    itself.

    Args:
        plan: Current topology plan
        joined: Slots whose node is Normal

    Returns:
        Seeds chosen with the same rules as ``select_seeds``
    """
    joined = set(joined)
    live = [slot for slot in plan.target_slots if slot in joined]
    if not live:
        return plan.seeds[:1]
    return select_seeds(plan.racks, live)
