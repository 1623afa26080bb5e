import time
from dataclasses import replace

import pytest

from conftest import HealthEndpoints, ScriptedSource
from elastic_tier.config import FleetConfig
from elastic_tier.fleet import Fleet, build_fleet
from elastic_tier.members import MemberState
from elastic_tier.traffic_router import UNAVAILABLE


@pytest.fixture
def cfg():
    return FleetConfig(
        project_id=None,
        pool_name="web",
        min_capacity=1,
        max_capacity=4,
        desired_capacity=1,
        healthy_threshold=2,
        unhealthy_threshold=2,
        health_check_interval=0.01,
        metric_period=0.01,
        reconcile_interval=0.01,
        cpu_high_threshold=70,
        cpu_high_periods=2,
        cpu_low_threshold=30,
        cpu_low_periods=2,
        scale_out_cooldown=300,
        scale_in_cooldown=300,
        drain_grace_seconds=120,
    )


@pytest.fixture
def make_fleet(cfg, substrate, events, clock):
    def factory(samples=()):
        return Fleet(cfg, substrate, ScriptedSource(samples), events=events, clock=clock,
                     health_http=HealthEndpoints())
    return factory


def warm_up(fleet, rounds=2):
    for _ in range(rounds):
        fleet.health.run_once()


class TestFleet:
    def test_serves_after_members_pass_health_checks(self, make_fleet):
        fleet = make_fleet()
        fleet.pool.reconcile()
        assert fleet.router.route() is UNAVAILABLE

        warm_up(fleet)

        route = fleet.router.route()
        assert route.member_id == fleet.pool.snapshot()[0].member_id

    def test_sustained_high_cpu_scales_out_once_per_cooldown(self, make_fleet, clock):
        fleet = make_fleet(samples=[80, 85, 90, 95])
        fleet.pool.reconcile()
        warm_up(fleet)

        for _ in range(4):
            fleet.monitor.run_once()
            clock.advance(60)

        assert fleet.pool.desired == 2
        fleet.pool.reconcile()
        assert fleet.pool.active_count() == 2
        assert [h["outcome"] for h in fleet.controller.history] == ["applied", "cooldown"]

    def test_low_cpu_drains_member_out_of_rotation(self, make_fleet, cfg, substrate, clock):
        fleet = make_fleet(samples=[10, 10])
        fleet.pool.set_desired_capacity(2)
        warm_up(fleet)
        assert len(fleet.router.table) == 2

        fleet.monitor.run_once()
        fleet.monitor.run_once()
        fleet.pool.reconcile()

        draining = [m for m in fleet.pool.snapshot() if m.state == MemberState.DRAINING]
        assert len(draining) == 1
        assert len(fleet.router.table) == 1
        assert draining[0].member_id not in {r.member_id for r in fleet.router.table}

        clock.advance(cfg.drain_grace_seconds - 1)
        fleet.pool.reconcile()
        assert substrate.terminated == []

        clock.advance(1)
        fleet.pool.reconcile()
        assert substrate.terminated == [draining[0].handle]

    def test_status_combines_components(self, make_fleet):
        fleet = make_fleet()
        fleet.pool.reconcile()

        status = fleet.status()

        assert status["pool"]["desired"] == 1
        assert set(status["scaling"]["policies"]) == {"scale-out", "scale-in"}
        assert set(status["alarms"]["alarms"]) == {"cpu-high", "cpu-low"}

    def test_status_endpoint(self, make_fleet):
        fleet = make_fleet()
        fleet.pool.reconcile()

        resp = fleet.create_app().test_client().get("/_fleet/status")

        assert resp.status_code == 200
        assert resp.get_json()["pool"]["pool"] == "web"

    def test_start_and_stop_background_loops(self, make_fleet, substrate):
        fleet = make_fleet()

        fleet.start()
        fleet.stop()

        assert len(substrate.launched) == 1
        assert fleet._threads == []

    def test_capacity_change_wakes_reconcile_loop(self, cfg, substrate, events, clock):
        slow = replace(cfg, reconcile_interval=60, health_check_interval=60, metric_period=60)
        fleet = Fleet(slow, substrate, ScriptedSource(), events=events, clock=clock,
                      health_http=HealthEndpoints())
        fleet.start()
        try:
            fleet.pool.set_desired_capacity(3, reconcile=False)
            for _ in range(200):
                if len(substrate.launched) == 3:
                    break
                time.sleep(0.01)
        finally:
            fleet.stop()

        assert len(substrate.launched) == 3

    def test_build_requires_project(self, cfg):
        with pytest.raises(SystemExit):
            build_fleet(cfg)
