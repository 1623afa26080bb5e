import threading
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from elastic_tier.clock import now_ist_dt, seconds_since
from elastic_tier.pool_manager import clamp


class Outcome(str, Enum):
    APPLIED = "applied"
    NO_CHANGE = "no_change"   # applied, but clamped to the current desired value
    COOLDOWN = "cooldown"


@dataclass
class ScalingPolicy:
    name: str
    adjustment: int
    cooldown: float
    last_applied: Optional[object] = None

    def cooldown_remaining(self, now):
        elapsed = seconds_since(self.last_applied, now)
        if elapsed is None:
            return 0
        return max(0, int(self.cooldown - elapsed))


@dataclass
class ScalingResult:
    policy: str
    outcome: Outcome
    old_desired: int
    new_desired: int


class ScalingController:
    def __init__(self, pool, events=None, clock=now_ist_dt):
        self.pool = pool
        self.events = events
        self.clock = clock
        self.policies = {}
        self.history = []
        # One capacity change in flight per pool; concurrent firings queue here.
        self._lock = threading.Lock()

    def add_policy(self, policy):
        self.policies[policy.name] = policy
        return policy

    def action_for(self, policy):
        """Zero-argument callable suitable as an alarm action."""
        return lambda: self.apply(policy)

    def apply(self, policy):
        with self._lock:
            now = self.clock()
            old = self.pool.desired

            elapsed = seconds_since(policy.last_applied, now)
            if elapsed is not None and elapsed < policy.cooldown:
                remaining = int(policy.cooldown - elapsed)
                print(f"Cooldown {policy.name}: {remaining}s left, skipping", flush=True)
                if self.events:
                    self.events.publish("scaling_cooldown", pool=self.pool.pool_name,
                                        policy=policy.name, remaining_seconds=remaining,
                                        desired=old)
                return self._record(policy, Outcome.COOLDOWN, old, old, now)

            target = clamp(old + policy.adjustment, self.pool.minimum, self.pool.maximum)
            # Launches and drains happen on the reconcile loop.
            new = self.pool.set_desired_capacity(target, reconcile=False)
            policy.last_applied = now

            if new == old:
                print(f"Scale {policy.name}: limit reached at {old}", flush=True)
                outcome = Outcome.NO_CHANGE
            else:
                print(f"Scaled {policy.name}: {old} → {new}", flush=True)
                outcome = Outcome.APPLIED
            if self.events:
                self.events.publish(f"scaling_{outcome.value}", pool=self.pool.pool_name,
                                    policy=policy.name, old_desired=old, new_desired=new)
            return self._record(policy, outcome, old, new, now)

    def _record(self, policy, outcome, old, new, now):
        result = ScalingResult(policy.name, outcome, old, new)
        self.history.append({
            "timestamp": now,
            "policy": policy.name,
            "outcome": outcome.value,
            "old_desired": old,
            "new_desired": new,
        })
        if len(self.history) > 50:
            self.history = self.history[-50:]
        return result

    def status(self):
        now = self.clock()
        return {
            "desired": self.pool.desired,
            "policies": {
                name: {
                    "adjustment": p.adjustment,
                    "cooldown": p.cooldown,
                    "last_applied": p.last_applied.isoformat() if p.last_applied else None,
                    "cooldown_remaining_seconds": p.cooldown_remaining(now),
                }
                for name, p in self.policies.items()
            },
            "recent_history": [
                {**h, "timestamp": h["timestamp"].isoformat()} for h in self.history[-10:]
            ],
        }
