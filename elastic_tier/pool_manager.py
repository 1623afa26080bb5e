import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import timedelta

from elastic_tier.clock import now_ist_dt, seconds_since
from elastic_tier.members import ACTIVE_STATES, Member, MemberState


def clamp(value, minimum, maximum):
    return max(minimum, min(value, maximum))


class PoolManager:
    def __init__(self, substrate, launch_spec, minimum, maximum, desired,
                 readiness_delay=0, drain_grace_seconds=300, launch_timeout=120,
                 max_launch_retries=3, events=None, clock=now_ist_dt, pool_name="pool"):
        if minimum > maximum:
            raise ValueError(f"minimum ({minimum}) > maximum ({maximum})")

        self.substrate = substrate
        self.launch_spec = launch_spec
        self.minimum = minimum
        self.maximum = maximum
        self.readiness_delay = readiness_delay
        self.drain_grace_seconds = drain_grace_seconds
        self.launch_timeout = launch_timeout
        self.max_launch_retries = max_launch_retries
        self.events = events
        self.clock = clock
        self.pool_name = pool_name

        self._desired = clamp(desired, minimum, maximum)
        self._members = {}
        self._listeners = []
        # Single writer lock; listeners run under it, external I/O never does.
        self._lock = threading.RLock()
        self._reconcile_lock = threading.Lock()
        self._pending_events = []
        self._removal_cursor = 0
        self._launch_failures = 0
        self.launch_alarm = False
        # Set whenever desired capacity changes; the reconcile loop waits on it.
        self.changed = threading.Event()

    @property
    def desired(self):
        with self._lock:
            return self._desired

    def snapshot(self):
        with self._lock:
            return [replace(m) for m in self._members.values()]

    def get(self, member_id):
        with self._lock:
            m = self._members.get(member_id)
            return replace(m) if m else None

    def active_count(self):
        with self._lock:
            return sum(1 for m in self._members.values() if m.state in ACTIVE_STATES)

    def subscribe(self, listener):
        """listener(member, old_state, new_state); old_state is None for new members."""
        with self._lock:
            self._listeners.append(listener)

    def set_desired_capacity(self, n, reconcile=True):
        with self._lock:
            old = self._desired
            self._desired = clamp(n, self.minimum, self.maximum)
            if self._desired != n:
                print(f"Desired capacity {n} clamped to {self._desired} "
                      f"(range {self.minimum}-{self.maximum})", flush=True)
            if old != self._desired:
                print(f"Desired capacity {old} → {self._desired}", flush=True)
            new = self._desired
        self.changed.set()

        if reconcile:
            self.reconcile()
        return new

    def reconcile(self):
        """One idempotent step toward desired capacity."""
        with self._reconcile_lock:
            now = self.clock()
            placeholders = []

            with self._lock:
                to_terminate = self._expire_drains(now)
                self._promote_ready(now)

                shortfall = self._desired - self.active_count()
                if shortfall > 0:
                    shortfall -= self._reuse_draining(shortfall, now)
                if shortfall > 0:
                    if self.launch_alarm:
                        print(f"Launches suspended by fleet health alarm "
                              f"({shortfall} short of {self._desired})", flush=True)
                    else:
                        placeholders = [self._reserve(now) for _ in range(shortfall)]
                elif shortfall < 0:
                    self._drain(-shortfall, now)
            self._flush_events()

            for handle in to_terminate:
                self._terminate(handle)
            if placeholders:
                with ThreadPoolExecutor(max_workers=len(placeholders)) as executor:
                    list(executor.map(self._launch, placeholders))

    def mark_healthy(self, member_id):
        with self._lock:
            m = self._members.get(member_id)
            if m is None:
                return
            m.ready = True
            if m.state == MemberState.LAUNCHING and self._readiness_elapsed(m, self.clock()):
                self._transition(m, MemberState.IN_SERVICE)

    def report_launch_failure(self, member_id, reason):
        with self._lock:
            m = self._members.get(member_id)
            if m is None or m.state != MemberState.LAUNCHING:
                return False
            handle = m.handle
            self._transition(m, MemberState.TERMINATED)
            self._record_launch_failure(member_id, reason)
        self._flush_events()
        if handle is not None:
            self._terminate(handle)
        return True

    def cancel_drain(self, member_id):
        with self._lock:
            cancelled = self._cancel_drain(member_id)
        self._flush_events()
        return cancelled

    def clear_launch_alarm(self):
        with self._lock:
            was_raised = self.launch_alarm
            self.launch_alarm = False
            self._launch_failures = 0
        if was_raised and self.events:
            self.events.publish("fleet_health_cleared", pool=self.pool_name)

    def adopt(self):
        """Take ownership of members already running on the substrate."""
        handles = self.substrate.list_members(self.launch_spec)
        now = self.clock()
        adopted = 0
        with self._lock:
            known = {m.handle.name for m in self._members.values() if m.handle}
            for handle in handles:
                if handle.name in known:
                    continue
                m = Member(member_id=handle.name, state=MemberState.IN_SERVICE,
                           launched_at=now, address=handle.address, handle=handle, ready=True)
                self._members[m.member_id] = m
                self._notify(m, None, m.state)
                adopted += 1
        if adopted:
            print(f"Adopted {adopted} running member(s) into {self.pool_name}", flush=True)
        return adopted

    # Callers of the underscore helpers below hold self._lock.

    def _emit(self, kind, **details):
        if self.events:
            self._pending_events.append((kind, details))

    def _flush_events(self):
        with self._lock:
            pending, self._pending_events = self._pending_events, []
        for kind, details in pending:
            self.events.publish(kind, **details)

    def _transition(self, m, new_state):
        old = m.state
        m.state = new_state
        if new_state == MemberState.TERMINATED:
            self._members.pop(m.member_id, None)
        print(f"Member {m.member_id}: {old.value} → {new_state.value}", flush=True)
        self._notify(m, old, new_state)

    def _notify(self, m, old, new):
        view = replace(m)
        for listener in list(self._listeners):
            try:
                listener(view, old, new)
            except Exception as e:
                print(f"Pool listener failed for {m.member_id}: {e}", flush=True)

    def _readiness_elapsed(self, m, now):
        return seconds_since(m.launched_at, now) >= self.readiness_delay

    def _promote_ready(self, now):
        for m in list(self._members.values()):
            if m.state == MemberState.LAUNCHING and m.ready and self._readiness_elapsed(m, now):
                self._transition(m, MemberState.IN_SERVICE)

    def _expire_drains(self, now):
        handles = []
        for m in list(self._members.values()):
            if m.state == MemberState.DRAINING and now >= m.drain_deadline:
                if m.handle is not None:
                    handles.append(m.handle)
                self._transition(m, MemberState.TERMINATED)
                self._emit("member_terminated", pool=self.pool_name, member=m.member_id)
        return handles

    def _cancel_drain(self, member_id):
        m = self._members.get(member_id)
        if m is None or m.state != MemberState.DRAINING:
            return False
        now = self.clock()
        if now >= m.drain_deadline:
            return False
        m.drain_deadline = None
        if m.ready:
            self._transition(m, MemberState.IN_SERVICE)
        else:
            # Startup window restarts for a member that never became healthy.
            m.launched_at = now
            self._transition(m, MemberState.LAUNCHING)
        self._emit("drain_cancelled", pool=self.pool_name, member=member_id)
        return True

    def _reuse_draining(self, needed, now):
        draining = [m for m in self._members.values()
                    if m.state == MemberState.DRAINING and now < m.drain_deadline]
        # Most recently drained first: they have the most grace left.
        draining.sort(key=lambda m: m.drain_deadline, reverse=True)
        reused = 0
        for m in draining[:needed]:
            if self._cancel_drain(m.member_id):
                reused += 1
        return reused

    def _reserve(self, now):
        m = Member(member_id=f"{self.pool_name}-{uuid.uuid4().hex[:8]}",
                   state=MemberState.LAUNCHING, launched_at=now)
        self._members[m.member_id] = m
        print(f"Member {m.member_id}: reserved (Launching)", flush=True)
        self._notify(m, None, m.state)
        return m.member_id

    def _select_for_removal(self, count):
        launching = sorted(
            (m for m in self._members.values() if m.state == MemberState.LAUNCHING),
            key=lambda m: m.launched_at,
        )
        victims = launching[:count]
        remaining = count - len(victims)
        if remaining <= 0:
            return victims

        in_service = sorted(
            (m for m in self._members.values() if m.state == MemberState.IN_SERVICE),
            key=lambda m: (m.launched_at, m.member_id),
        )
        if not in_service:
            return victims
        start = self._removal_cursor % len(in_service)
        rotated = in_service[start:] + in_service[:start]
        picked = rotated[:remaining]
        self._removal_cursor = start + len(picked)
        return victims + picked

    def _drain(self, count, now):
        deadline = now + timedelta(seconds=self.drain_grace_seconds)
        for m in self._select_for_removal(count):
            m.drain_deadline = deadline
            self._transition(m, MemberState.DRAINING)
            self._emit("member_draining", pool=self.pool_name, member=m.member_id,
                       deadline=deadline.isoformat())

    def _record_launch_failure(self, member_id, reason):
        self._launch_failures += 1
        print(f"Launch failed for {member_id} "
              f"(attempt {self._launch_failures}, {self.max_launch_retries} retries allowed): "
              f"{reason}", flush=True)
        self._emit("launch_failed", pool=self.pool_name, member=member_id,
                   reason=str(reason), consecutive=self._launch_failures)
        # First attempt plus max_launch_retries retries.
        if self._launch_failures > self.max_launch_retries and not self.launch_alarm:
            self.launch_alarm = True
            print(f"CRITICAL: {self.pool_name} launches failing persistently, "
                  f"suspending launches", flush=True)
            self._emit("fleet_health_alarm", pool=self.pool_name,
                       consecutive_failures=self._launch_failures,
                       last_reason=str(reason))

    def _launch(self, member_id):
        try:
            handle = self.substrate.launch(self.launch_spec, member_id, timeout=self.launch_timeout)
        except Exception as e:
            with self._lock:
                m = self._members.get(member_id)
                if m is not None:
                    self._transition(m, MemberState.TERMINATED)
                self._record_launch_failure(member_id, e)
            self._flush_events()
            return

        with self._lock:
            m = self._members.get(member_id)
            if m is not None:
                m.handle = handle
                m.address = handle.address
                self._launch_failures = 0
                self._notify(m, m.state, m.state)
                print(f"Member {member_id} launched at {handle.address}", flush=True)
                return
        # Placeholder was retired while the launch was in flight.
        self._terminate(handle)

    def _terminate(self, handle):
        try:
            self.substrate.terminate(handle)
        except Exception as e:
            print(f"Failed to terminate {handle.name}: {e}", flush=True)

    def status(self):
        with self._lock:
            counts = {s.value: 0 for s in MemberState if s != MemberState.TERMINATED}
            for m in self._members.values():
                counts[m.state.value] += 1
            return {
                "pool": self.pool_name,
                "desired": self._desired,
                "minimum": self.minimum,
                "maximum": self.maximum,
                "members": counts,
                "consecutive_launch_failures": self._launch_failures,
                "launch_alarm": self.launch_alarm,
            }
