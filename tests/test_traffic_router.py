from collections import Counter

from conftest import HealthEndpoints
from elastic_tier.health_checker import HealthChecker
from elastic_tier.routing_table import Route
from elastic_tier.traffic_router import UNAVAILABLE, TrafficRouter, Unavailable


def table(n):
    return tuple(Route(f"web-{i}", f"10.0.1.{i}") for i in range(n))


class TestTrafficRouter:
    def test_empty_table_is_unavailable(self):
        router = TrafficRouter()

        result = router.route()

        assert result is UNAVAILABLE
        assert isinstance(result, Unavailable)
        assert not result
        assert router.status()["unavailable"] == 1

    def test_round_robin_spreads_evenly(self):
        router = TrafficRouter()
        router.update(table(3))

        picks = Counter(router.route().member_id for _ in range(30))

        assert picks == {"web-0": 10, "web-1": 10, "web-2": 10}

    def test_every_member_served_within_one_cycle(self):
        router = TrafficRouter()
        router.update(table(4))
        router.route()  # offset the counter

        window = {router.route().member_id for _ in range(4)}

        assert window == {"web-0", "web-1", "web-2", "web-3"}

    def test_update_replaces_snapshot(self):
        router = TrafficRouter()
        router.update(table(2))
        snapshot = router.table
        router.update(table(1))

        assert len(snapshot) == 2
        assert {router.route().member_id for _ in range(5)} == {"web-0"}

    def test_update_to_empty_makes_unavailable(self):
        router = TrafficRouter()
        router.update(table(2))
        router.update(())

        assert router.route() is UNAVAILABLE


class TestRoutingFromHealth:
    def test_unhealthy_member_is_never_selected(self, make_pool, clock):
        endpoints = HealthEndpoints()
        pool = make_pool(desired=3)
        router = TrafficRouter()
        health = HealthChecker(pool, router.update, healthy_threshold=1, unhealthy_threshold=1,
                               http=endpoints, clock=clock)
        pool.reconcile()
        health.run_once()
        sick = pool.snapshot()[1]

        endpoints.status[sick.address] = 503
        health.run_once()

        picks = {router.route().member_id for _ in range(20)}
        assert sick.member_id not in picks
        assert len(picks) == 2

    def test_all_unhealthy_gives_unavailable_not_fallback(self, make_pool, clock):
        endpoints = HealthEndpoints()
        pool = make_pool(desired=2)
        router = TrafficRouter()
        health = HealthChecker(pool, router.update, healthy_threshold=1, unhealthy_threshold=1,
                               http=endpoints, clock=clock)
        pool.reconcile()
        health.run_once()

        endpoints.default = 500
        health.run_once()

        assert router.route() is UNAVAILABLE
