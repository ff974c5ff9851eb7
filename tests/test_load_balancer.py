import random
from collections import Counter
from dataclasses import dataclass
from typing import Optional

import pytest

from chatrelay.core.errors import NoEligibleAccount
from chatrelay.core.load_balancer import LoadBalancer, Strategy, usage_ratio


@dataclass
class Acc:
    id: str
    used: int = 0
    daily_quota: Optional[int] = None


def _ids(accounts):
    return [a.id for a in accounts]


def test_round_robin_cycles_in_order():
    balancer = LoadBalancer()
    accounts = [Acc("a"), Acc("b"), Acc("c")]

    picks = [balancer.select(accounts).id for _ in range(7)]

    assert picks == ["a", "b", "c", "a", "b", "c", "a"]


def test_round_robin_is_fair_over_many_calls():
    balancer = LoadBalancer()
    accounts = [Acc(str(i)) for i in range(4)]

    counts = Counter(balancer.select(accounts).id for _ in range(400))

    assert set(counts.values()) == {100}


def test_round_robin_continues_after_current_account_leaves():
    balancer = LoadBalancer()
    a, b, c, d = Acc("a"), Acc("b"), Acc("c"), Acc("d")

    assert balancer.select([a, b, c, d]).id == "a"
    assert balancer.select([a, b, c, d]).id == "b"
    # b dropped out (quota, offline); rotation resumes with whoever followed it
    assert balancer.select([a, c, d]).id == "c"
    assert balancer.select([a, c, d]).id == "d"
    assert balancer.select([a, c, d]).id == "a"
    # b is back and takes its old place in the rotation
    assert balancer.select([a, b, c, d]).id == "b"


def test_round_robin_cursors_are_per_group():
    balancer = LoadBalancer()
    accounts = [Acc("a"), Acc("b")]

    assert balancer.select(accounts, group="p1").id == "a"
    assert balancer.select(accounts, group="p2").id == "a"
    assert balancer.select(accounts, group="p1").id == "b"


def test_weighted_matches_configured_ratio_exactly():
    balancer = LoadBalancer()
    accounts = [Acc("a"), Acc("b"), Acc("c")]
    weights = {"a": 5, "b": 1, "c": 1}

    picks = [balancer.select(accounts, Strategy.WEIGHTED, weights=weights).id for _ in range(70)]

    assert Counter(picks) == {"a": 50, "b": 10, "c": 10}
    # smooth: the heavy account never takes more than its share in a row
    assert "aaaaaa" not in "".join(picks)


def test_weighted_defaults_missing_weights_to_one():
    balancer = LoadBalancer()
    accounts = [Acc("a"), Acc("b")]

    picks = [balancer.select(accounts, "weighted", weights={"a": 3}).id for _ in range(40)]

    assert Counter(picks) == {"a": 30, "b": 10}


def test_least_used_prefers_lowest_ratio():
    balancer = LoadBalancer()
    accounts = [
        Acc("a", used=9, daily_quota=10),
        Acc("b", used=2, daily_quota=10),
        Acc("c", used=50, daily_quota=100),
    ]

    assert balancer.select(accounts, Strategy.LEAST_USED).id == "b"


def test_least_used_treats_unlimited_as_zero_and_rotates_ties():
    balancer = LoadBalancer()
    accounts = [Acc("a", used=500), Acc("b", used=3), Acc("c", used=1, daily_quota=10)]

    picks = [balancer.select(accounts, Strategy.LEAST_USED).id for _ in range(4)]

    assert usage_ratio(accounts[0]) == 0.0
    assert picks == ["a", "b", "a", "b"]


def test_random_only_returns_eligible_accounts():
    balancer = LoadBalancer(rng=random.Random(42))
    accounts = [Acc("a"), Acc("b"), Acc("c")]

    picks = {balancer.select(accounts, Strategy.RANDOM).id for _ in range(200)}

    assert picks == {"a", "b", "c"}


def test_empty_set_raises():
    balancer = LoadBalancer()
    for strategy in Strategy:
        with pytest.raises(NoEligibleAccount):
            balancer.select([], strategy)


def test_unknown_strategy_is_rejected():
    with pytest.raises(ValueError):
        LoadBalancer().select([Acc("a")], "fastest")


def test_reset_restarts_rotation():
    balancer = LoadBalancer()
    accounts = [Acc("a"), Acc("b")]

    balancer.select(accounts)
    balancer.reset()

    assert balancer.select(accounts).id == "a"
