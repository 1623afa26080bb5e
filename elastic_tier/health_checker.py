import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, replace
from enum import Enum

import requests

from elastic_tier.clock import now_ist_dt, seconds_since
from elastic_tier.members import ACTIVE_STATES, MemberState
from elastic_tier.routing_table import derive_routing_table


class Verdict(str, Enum):
    HEALTHY = "Healthy"
    UNHEALTHY = "Unhealthy"


@dataclass
class HealthRecord:
    member_id: str
    successes: int = 0
    failures: int = 0
    verdict: Verdict = Verdict.UNHEALTHY


class HealthChecker:
    def __init__(self, pool, on_table, path="/", port=80, timeout=5,
                 healthy_threshold=5, unhealthy_threshold=2, accepted_status=(200, 399),
                 startup_window=300, http=None, clock=now_ist_dt, max_workers=16):
        self.pool = pool
        self.on_table = on_table
        self.path = path if path.startswith("/") else "/" + path
        self.port = port
        self.timeout = timeout
        self.healthy_threshold = healthy_threshold
        self.unhealthy_threshold = unhealthy_threshold
        self.accepted_status = accepted_status
        self.startup_window = startup_window
        # Anything with a requests-style get(); the requests module by default.
        self.http = http or requests
        self.clock = clock
        self.max_workers = max_workers

        self._lock = threading.Lock()
        self._records = {}
        self._members = {}
        self.table = ()

        pool.subscribe(self.on_member_transition)

    def on_member_transition(self, member, old_state, new_state):
        with self._lock:
            if new_state == MemberState.TERMINATED:
                self._members.pop(member.member_id, None)
                self._records.pop(member.member_id, None)
            else:
                self._members[member.member_id] = member
                self._records.setdefault(member.member_id, HealthRecord(member.member_id))
            self._publish_table()

    def check_member(self, member):
        url = f"http://{member.address}:{self.port}{self.path}"
        try:
            resp = self.http.get(url, timeout=self.timeout, allow_redirects=False)
        except requests.RequestException as e:
            print(f"Health check {member.member_id} failed: {e.__class__.__name__}", flush=True)
            return False
        low, high = self.accepted_status
        return low <= resp.status_code <= high

    def run_once(self):
        with self._lock:
            targets = [m for m in self._members.values()
                       if m.state in ACTIVE_STATES and m.address]

        if targets:
            workers = min(self.max_workers, len(targets))
            with ThreadPoolExecutor(max_workers=workers) as executor:
                futures = {executor.submit(self.check_member, m): m for m in targets}
                for future in as_completed(futures):
                    self.record_result(futures[future].member_id, future.result())

        self.check_startup_window()

    def record_result(self, member_id, ok):
        """Apply one check result; returns the new verdict if it changed."""
        with self._lock:
            rec = self._records.get(member_id)
            if rec is None:
                return None
            changed = self._apply(rec, ok)
            if changed:
                print(f"Member {member_id} is now {changed.value}", flush=True)
                self._publish_table()

        if changed == Verdict.HEALTHY:
            self.pool.mark_healthy(member_id)
        return changed

    def _apply(self, rec, ok):
        if ok:
            rec.successes += 1
            rec.failures = 0
            if rec.verdict == Verdict.UNHEALTHY and rec.successes >= self.healthy_threshold:
                rec.verdict = Verdict.HEALTHY
                return Verdict.HEALTHY
        else:
            rec.failures += 1
            rec.successes = 0
            if rec.verdict == Verdict.HEALTHY and rec.failures >= self.unhealthy_threshold:
                rec.verdict = Verdict.UNHEALTHY
                return Verdict.UNHEALTHY
        return None

    def check_startup_window(self):
        now = self.clock()
        with self._lock:
            stuck = [
                m.member_id for m in self._members.values()
                if m.state == MemberState.LAUNCHING
                and seconds_since(m.launched_at, now) > self.startup_window
                and self._records[m.member_id].verdict != Verdict.HEALTHY
            ]
        for member_id in stuck:
            self.pool.report_launch_failure(
                member_id, f"not healthy within {self.startup_window:g}s startup window")
        return stuck

    def _publish_table(self):
        verdicts = {mid: rec.verdict for mid, rec in self._records.items()}
        self.table = derive_routing_table(self._members, verdicts, Verdict.HEALTHY)
        self.on_table(self.table)

    def record(self, member_id):
        with self._lock:
            rec = self._records.get(member_id)
            return replace(rec) if rec else None

    def status(self):
        with self._lock:
            healthy = sum(1 for r in self._records.values() if r.verdict == Verdict.HEALTHY)
            return {
                "tracked": len(self._records),
                "healthy": healthy,
                "unhealthy": len(self._records) - healthy,
                "routable": len(self.table),
            }
