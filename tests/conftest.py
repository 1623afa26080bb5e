import threading
from datetime import datetime, timedelta

import pytest
import requests

from elastic_tier.clock import IST
from elastic_tier.events import EventPublisher
from elastic_tier.members import LaunchSpec, MemberHandle
from elastic_tier.pool_manager import PoolManager
from elastic_tier.substrate import LaunchError


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, 12, 0, 0, tzinfo=IST)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class FakeSubstrate:
    def __init__(self):
        self.launched = []
        self.terminated = []
        self.existing = []
        self.fail_next = 0
        # Called with the member name before each launch; may block.
        self.before_launch = None
        self._n = 0
        self._lock = threading.Lock()

    def launch(self, spec, name, timeout=120):
        if self.before_launch:
            self.before_launch(name)
        with self._lock:
            if self.fail_next:
                self.fail_next -= 1
                raise LaunchError(f"{name} quota exceeded")
            self._n += 1
            handle = MemberHandle(name=name, address=f"10.0.1.{self._n}", namespace=spec.namespace)
            self.launched.append(handle)
            return handle

    def terminate(self, handle):
        with self._lock:
            self.terminated.append(handle)

    def list_members(self, spec):
        return list(self.existing)


class FakeResponse:
    def __init__(self, status_code, content=b"", headers=None):
        self.status_code = status_code
        self.content = content
        self.headers = headers or {}


class HealthEndpoints:
    """Answers health checks by member address; unknown addresses time out."""

    def __init__(self, default=200):
        self.default = default
        self.status = {}
        self.calls = []

    def get(self, url, timeout=None, allow_redirects=True):
        self.calls.append(url)
        address = url.split("//", 1)[1].split(":", 1)[0]
        code = self.status.get(address, self.default)
        if code is None:
            raise requests.ConnectTimeout(f"{url} timed out")
        return FakeResponse(code)


class ScriptedSource:
    def __init__(self, values=()):
        self.values = list(values)
        self.calls = 0

    def sample(self, statistic, pool_name, period):
        self.calls += 1
        if not self.values:
            return None
        value = self.values.pop(0)
        if isinstance(value, Exception):
            raise value
        return value


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def substrate():
    return FakeSubstrate()


@pytest.fixture
def events():
    return EventPublisher(project_id=None)


@pytest.fixture
def launch_spec():
    return LaunchSpec(image="nginx:1.27", instance_type="t3.micro", namespace="default",
                      port=80, resources={"cpu": "2", "memory": "1Gi"},
                      labels={"pool": "web"})


@pytest.fixture
def make_pool(substrate, launch_spec, events, clock):
    def factory(minimum=1, maximum=4, desired=1, **kwargs):
        kwargs.setdefault("drain_grace_seconds", 60)
        return PoolManager(substrate, launch_spec, minimum, maximum, desired,
                           events=events, clock=clock, pool_name="web", **kwargs)
    return factory
