"""
Load Balancer

Chooses one account out of an eligible set. The strategy is a closed set of
variants, each with its own selection function:

- round-robin: stable cycling; the cursor survives accounts dropping out
- weighted: smooth weighted round-robin, converges to the configured ratios
- least-used: lowest used/daily_quota ratio, ties broken round-robin
- random: uniform choice
"""
import random
from enum import Enum
from threading import Lock
from typing import Dict, List, Mapping, Optional, Protocol, Sequence

from chatrelay.core.errors import NoEligibleAccount


class Strategy(str, Enum):
    ROUND_ROBIN = "round-robin"
    WEIGHTED = "weighted"
    LEAST_USED = "least-used"
    RANDOM = "random"


class Selectable(Protocol):
    id: str
    used: int
    daily_quota: Optional[int]


def usage_ratio(account: Selectable) -> float:
    if not account.daily_quota:
        return 0.0
    return account.used / account.daily_quota


class LoadBalancer:
    def __init__(self, rng: Optional[random.Random] = None):
        self._lock = Lock()
        self._rng = rng or random.Random()
        # group -> id of the account picked last
        self._cursor: Dict[str, str] = {}
        # group -> ordering seen on the last call, used to step past accounts that left the set
        self._order: Dict[str, List[str]] = {}
        # group -> account id -> smooth WRR running weight
        self._current_weights: Dict[str, Dict[str, int]] = {}

    def select(
        self,
        eligible: Sequence[Selectable],
        strategy: Strategy = Strategy.ROUND_ROBIN,
        group: str = "default",
        weights: Optional[Mapping[str, int]] = None,
    ):
        if not eligible:
            raise NoEligibleAccount(provider_id=group)

        strategy = Strategy(strategy)
        with self._lock:
            if strategy == Strategy.ROUND_ROBIN:
                return self._select_round_robin(eligible, group)
            if strategy == Strategy.WEIGHTED:
                return self._select_weighted(eligible, group, weights or {})
            if strategy == Strategy.LEAST_USED:
                return self._select_least_used(eligible, group)
            return self._rng.choice(list(eligible))

    def reset(self) -> None:
        with self._lock:
            self._cursor.clear()
            self._order.clear()
            self._current_weights.clear()

    def _select_round_robin(self, eligible: Sequence[Selectable], group: str):
        ids = [a.id for a in eligible]
        previous_order = self._order.get(group, [])
        last = self._cursor.get(group)
        chosen_idx = 0

        if last is not None:
            if last in ids:
                chosen_idx = (ids.index(last) + 1) % len(ids)
            elif last in previous_order:
                # The last pick left the set: continue with whoever followed it before.
                start = previous_order.index(last)
                followers = previous_order[start + 1:] + previous_order[:start]
                chosen_idx = next(
                    (ids.index(acc_id) for acc_id in followers if acc_id in ids),
                    0,
                )

        chosen = eligible[chosen_idx]
        self._cursor[group] = chosen.id
        self._order[group] = _merge_order(previous_order, ids)
        return chosen

    def _select_weighted(self, eligible: Sequence[Selectable], group: str, weights: Mapping[str, int]):
        running = self._current_weights.setdefault(group, {})
        live_ids = {a.id for a in eligible}
        for stale in [acc_id for acc_id in running if acc_id not in live_ids]:
            del running[stale]

        total = 0
        best = None
        for account in eligible:
            weight = max(1, int(weights.get(account.id, 1)))
            total += weight
            running[account.id] = running.get(account.id, 0) + weight
            if best is None or running[account.id] > running[best.id]:
                best = account
        running[best.id] -= total
        return best

    def _select_least_used(self, eligible: Sequence[Selectable], group: str):
        lowest = min(usage_ratio(a) for a in eligible)
        tied = [a for a in eligible if usage_ratio(a) == lowest]
        if len(tied) == 1:
            return tied[0]
        return self._select_round_robin(tied, f"{group}#least-used")


def _merge_order(previous: List[str], current: List[str]) -> List[str]:
    """Keep the remembered order of known ids and append newcomers."""
    merged = list(previous)
    seen = set(previous)
    for acc_id in current:
        if acc_id not in seen:
            merged.append(acc_id)
            seen.add(acc_id)
    return merged
