import os
from dataclasses import dataclass, field
from typing import Optional, Tuple


def _env_str(name, default):
    return os.environ.get(name, default)

def _env_int(name, default):
    return int(os.environ.get(name, default))

def _env_float(name, default):
    return float(os.environ.get(name, default))

def _env_list(name, default):
    raw = os.environ.get(name)
    if not raw:
        return tuple(default)
    return tuple(part.strip() for part in raw.split(",") if part.strip())


# Cloud / network
REGION = _env_str("AWS_REGION", "us-east-1")
PROJECT_ID = os.environ.get("GCP_PROJECT")  # None disables Pub/Sub + Cloud Monitoring
POOL_NAME = _env_str("POOL_NAME", "cpu-stress")
VPC_CIDR = _env_str("VPC_CIDR", "10.0.0.0/16")
SUBNET_CIDRS = _env_list("SUBNET_CIDRS", ["10.0.1.0/24", "10.0.2.0/24"])

# Worker image
IMAGE = _env_str("WORKER_IMAGE", "nginx:1.27")
INSTANCE_TYPE = _env_str("INSTANCE_TYPE", "t3.micro")
NAMESPACE = _env_str("NAMESPACE", "default")
WORKER_PORT = _env_int("WORKER_PORT", 80)
INGRESS_PORT = _env_int("INGRESS_PORT", 80)

# Capacity
MIN_CAPACITY = _env_int("MIN_CAPACITY", 1)
MAX_CAPACITY = _env_int("MAX_CAPACITY", 4)
DESIRED_CAPACITY = _env_int("DESIRED_CAPACITY", 1)

# Health checks
HEALTH_CHECK_PATH = _env_str("HEALTH_CHECK_PATH", "/")
HEALTH_CHECK_PORT = _env_int("HEALTH_CHECK_PORT", 80)
HEALTH_CHECK_INTERVAL = _env_float("HEALTH_CHECK_INTERVAL", 30)
HEALTH_CHECK_TIMEOUT = _env_float("HEALTH_CHECK_TIMEOUT", 5)
HEALTHY_THRESHOLD = _env_int("HEALTHY_THRESHOLD", 5)
UNHEALTHY_THRESHOLD = _env_int("UNHEALTHY_THRESHOLD", 2)
ACCEPTED_STATUS_LOW = _env_int("ACCEPTED_STATUS_LOW", 200)
ACCEPTED_STATUS_HIGH = _env_int("ACCEPTED_STATUS_HIGH", 399)
STARTUP_WINDOW = _env_float("STARTUP_WINDOW", 300)  # Launching -> Healthy deadline

# Lifecycle
READINESS_DELAY = _env_float("READINESS_DELAY", 0)
DRAIN_GRACE_SECONDS = _env_float("DRAIN_GRACE_SECONDS", 300)
LAUNCH_TIMEOUT = _env_float("LAUNCH_TIMEOUT", 120)
MAX_LAUNCH_RETRIES = _env_int("MAX_LAUNCH_RETRIES", 3)
RECONCILE_INTERVAL = _env_float("RECONCILE_INTERVAL", 10)

# CPU alarms
METRIC_PERIOD = _env_float("METRIC_PERIOD", 120)
METRIC_TYPE = _env_str("METRIC_TYPE", "kubernetes.io/container/cpu/limit_utilization")
CPU_HIGH_THRESHOLD = _env_float("CPU_HIGH_THRESHOLD", 70)
CPU_HIGH_PERIODS = _env_int("CPU_HIGH_PERIODS", 2)
CPU_LOW_THRESHOLD = _env_float("CPU_LOW_THRESHOLD", 30)
CPU_LOW_PERIODS = _env_int("CPU_LOW_PERIODS", 2)

# Scaling policies
SCALE_OUT_ADJUSTMENT = _env_int("SCALE_OUT_ADJUSTMENT", 1)
SCALE_OUT_COOLDOWN = _env_float("SCALE_OUT_COOLDOWN", 300)
SCALE_IN_ADJUSTMENT = _env_int("SCALE_IN_ADJUSTMENT", -1)
SCALE_IN_COOLDOWN = _env_float("SCALE_IN_COOLDOWN", 300)

# Events
EVENT_TOPIC = _env_str("EVENT_TOPIC", "fleet-events")

# Container resources per instance type
INSTANCE_PROFILES = {
    "t3.nano": {"cpu": "2", "memory": "512Mi"},
    "t3.micro": {"cpu": "2", "memory": "1Gi"},
    "t3.small": {"cpu": "2", "memory": "2Gi"},
    "t3.medium": {"cpu": "2", "memory": "4Gi"},
}


@dataclass(frozen=True)
class FleetConfig:
    region: str = REGION
    project_id: Optional[str] = PROJECT_ID
    pool_name: str = POOL_NAME
    vpc_cidr: str = VPC_CIDR
    subnet_cidrs: Tuple[str, ...] = field(default=SUBNET_CIDRS)
    image: str = IMAGE
    instance_type: str = INSTANCE_TYPE
    namespace: str = NAMESPACE
    worker_port: int = WORKER_PORT
    ingress_port: int = INGRESS_PORT

    min_capacity: int = MIN_CAPACITY
    max_capacity: int = MAX_CAPACITY
    desired_capacity: int = DESIRED_CAPACITY

    health_check_path: str = HEALTH_CHECK_PATH
    health_check_port: int = HEALTH_CHECK_PORT
    health_check_interval: float = HEALTH_CHECK_INTERVAL
    health_check_timeout: float = HEALTH_CHECK_TIMEOUT
    healthy_threshold: int = HEALTHY_THRESHOLD
    unhealthy_threshold: int = UNHEALTHY_THRESHOLD
    accepted_status: Tuple[int, int] = (ACCEPTED_STATUS_LOW, ACCEPTED_STATUS_HIGH)
    startup_window: float = STARTUP_WINDOW

    readiness_delay: float = READINESS_DELAY
    drain_grace_seconds: float = DRAIN_GRACE_SECONDS
    launch_timeout: float = LAUNCH_TIMEOUT
    max_launch_retries: int = MAX_LAUNCH_RETRIES
    reconcile_interval: float = RECONCILE_INTERVAL

    metric_period: float = METRIC_PERIOD
    metric_type: str = METRIC_TYPE
    cpu_high_threshold: float = CPU_HIGH_THRESHOLD
    cpu_high_periods: int = CPU_HIGH_PERIODS
    cpu_low_threshold: float = CPU_LOW_THRESHOLD
    cpu_low_periods: int = CPU_LOW_PERIODS

    scale_out_adjustment: int = SCALE_OUT_ADJUSTMENT
    scale_out_cooldown: float = SCALE_OUT_COOLDOWN
    scale_in_adjustment: int = SCALE_IN_ADJUSTMENT
    scale_in_cooldown: float = SCALE_IN_COOLDOWN

    event_topic: str = EVENT_TOPIC

    def __post_init__(self):
        if self.min_capacity < 0:
            raise ValueError(f"min_capacity must be >= 0, got {self.min_capacity}")
        if self.min_capacity > self.max_capacity:
            raise ValueError(
                f"min_capacity ({self.min_capacity}) > max_capacity ({self.max_capacity})"
            )
        clamped = max(self.min_capacity, min(self.desired_capacity, self.max_capacity))
        if clamped != self.desired_capacity:
            print(f"Desired capacity {self.desired_capacity} clamped to {clamped}", flush=True)
            object.__setattr__(self, "desired_capacity", clamped)
        if self.healthy_threshold < 1 or self.unhealthy_threshold < 1:
            raise ValueError("Health check thresholds must be >= 1")
        if self.cpu_high_periods < 1 or self.cpu_low_periods < 1:
            raise ValueError("Alarm evaluation periods must be >= 1")
        low, high = self.accepted_status
        if low > high:
            raise ValueError(f"Empty accepted status range {low}-{high}")
        if self.instance_type not in INSTANCE_PROFILES:
            raise ValueError(f"Unknown instance type: {self.instance_type}")

    @classmethod
    def from_env(cls):
        # Module constants were read from the environment at import time.
        return cls()

    @property
    def resources(self):
        return dict(INSTANCE_PROFILES[self.instance_type])
