import threading

from elastic_tier.clock import now_ist_dt, now_ist_iso
from elastic_tier.config import FleetConfig
from elastic_tier.events import EventPublisher
from elastic_tier.health_checker import HealthChecker
from elastic_tier.ingress import create_app
from elastic_tier.members import LaunchSpec
from elastic_tier.metric_monitor import Alarm, Comparison, MetricMonitor, Statistic
from elastic_tier.pool_manager import PoolManager
from elastic_tier.scaling_controller import ScalingController, ScalingPolicy
from elastic_tier.traffic_router import TrafficRouter


class Fleet:
    def __init__(self, cfg, substrate, metric_source, events=None, clock=now_ist_dt,
                 health_http=None):
        self.cfg = cfg
        self.events = events or EventPublisher(None, cfg.event_topic)

        launch_spec = LaunchSpec(
            image=cfg.image,
            instance_type=cfg.instance_type,
            namespace=cfg.namespace,
            port=cfg.worker_port,
            resources=cfg.resources,
            labels={"app": "elastic-tier-worker", "pool": cfg.pool_name},
        )
        self.pool = PoolManager(
            substrate, launch_spec,
            minimum=cfg.min_capacity,
            maximum=cfg.max_capacity,
            desired=cfg.desired_capacity,
            readiness_delay=cfg.readiness_delay,
            drain_grace_seconds=cfg.drain_grace_seconds,
            launch_timeout=cfg.launch_timeout,
            max_launch_retries=cfg.max_launch_retries,
            events=self.events,
            clock=clock,
            pool_name=cfg.pool_name,
        )

        self.router = TrafficRouter()
        self.health = HealthChecker(
            self.pool, self.router.update,
            path=cfg.health_check_path,
            port=cfg.health_check_port,
            timeout=cfg.health_check_timeout,
            healthy_threshold=cfg.healthy_threshold,
            unhealthy_threshold=cfg.unhealthy_threshold,
            accepted_status=cfg.accepted_status,
            startup_window=cfg.startup_window,
            http=health_http,
            clock=clock,
        )

        self.controller = ScalingController(self.pool, events=self.events, clock=clock)
        self.scale_out = self.controller.add_policy(
            ScalingPolicy("scale-out", cfg.scale_out_adjustment, cfg.scale_out_cooldown))
        self.scale_in = self.controller.add_policy(
            ScalingPolicy("scale-in", cfg.scale_in_adjustment, cfg.scale_in_cooldown))

        alarms = [
            Alarm("cpu-high", Comparison.GREATER_THAN, cfg.cpu_high_threshold,
                  cfg.cpu_high_periods, Statistic.AVERAGE,
                  action=self.controller.action_for(self.scale_out)),
            Alarm("cpu-low", Comparison.LESS_THAN, cfg.cpu_low_threshold,
                  cfg.cpu_low_periods, Statistic.AVERAGE,
                  action=self.controller.action_for(self.scale_in)),
        ]
        self.monitor = MetricMonitor(metric_source, alarms, cfg.pool_name, cfg.metric_period)
        self.pool.subscribe(self.monitor.on_member_transition)

        self._stop = threading.Event()
        self._threads = []

    def start(self):
        try:
            self.pool.adopt()
        except Exception as e:
            print("Adoption failed, starting empty:", e, flush=True)
        self.pool.reconcile()

        loops = [
            ("reconcile", self.pool.reconcile, self.cfg.reconcile_interval, self.pool.changed),
            ("health", self.health.run_once, self.cfg.health_check_interval, None),
            ("metrics", self.monitor.run_once, self.cfg.metric_period, None),
        ]
        for name, fn, interval, wake in loops:
            t = threading.Thread(target=self._loop, args=(name, fn, interval, wake),
                                 name=f"fleet-{name}", daemon=True)
            t.start()
            self._threads.append(t)
            print(f"{name} loop started (every {interval:g}s)", flush=True)

    def _loop(self, name, fn, interval, wake=None):
        # wake cuts the sleep short, e.g. when desired capacity changes.
        while not self._stop.is_set():
            if wake is not None:
                wake.clear()
            try:
                fn()
            except Exception as e:
                print(f"{name} loop error:", e, flush=True)
            (wake or self._stop).wait(interval)

    def stop(self, timeout=5):
        self._stop.set()
        self.pool.changed.set()
        for t in self._threads:
            t.join(timeout)
        self._threads = []

    def status(self):
        return {
            "timestamp": now_ist_iso(),
            "pool": self.pool.status(),
            "health": self.health.status(),
            "router": self.router.status(),
            "alarms": self.monitor.status(),
            "scaling": self.controller.status(),
        }

    def create_app(self):
        return create_app(self.router, worker_port=self.cfg.worker_port, status=self.status)


def build_fleet(cfg):
    from elastic_tier.metrics_source import CloudMonitoringSource
    from elastic_tier.substrate import KubernetesSubstrate

    if not cfg.project_id:
        raise SystemExit("Set GCP_PROJECT: CPU alarms read from Cloud Monitoring.")

    events = EventPublisher(cfg.project_id, cfg.event_topic)
    source = CloudMonitoringSource(cfg.project_id, cfg.metric_type)
    return Fleet(cfg, KubernetesSubstrate(), source, events=events)


def main():
    cfg = FleetConfig.from_env()
    print(f"Pool {cfg.pool_name}: {cfg.min_capacity}-{cfg.max_capacity} members "
          f"(desired {cfg.desired_capacity}), {cfg.instance_type} running {cfg.image}", flush=True)
    print(f"Region {cfg.region}, VPC {cfg.vpc_cidr}, subnets {', '.join(cfg.subnet_cidrs)}", flush=True)

    fleet = build_fleet(cfg)
    fleet.start()
    app = fleet.create_app()
    print(f"Ingress listening on :{cfg.ingress_port}", flush=True)
    try:
        app.run(host="0.0.0.0", port=cfg.ingress_port, threaded=True)
    except KeyboardInterrupt:
        pass
    finally:
        fleet.stop()
        print("Fleet manager stopped", flush=True)


if __name__ == "__main__":
    main()
