import threading
from enum import Enum

from elastic_tier.members import ACTIVE_STATES


class Comparison(str, Enum):
    GREATER_THAN = "GreaterThanThreshold"
    LESS_THAN = "LessThanThreshold"

    def breached(self, value, threshold):
        if self is Comparison.GREATER_THAN:
            return value > threshold
        return value < threshold


class Statistic(str, Enum):
    AVERAGE = "Average"
    MAXIMUM = "Maximum"
    MINIMUM = "Minimum"


class AlarmState(str, Enum):
    IDLE = "Idle"
    ACCUMULATING = "Accumulating"


# (state, breached) -> next state, before the firing check
TRANSITIONS = {
    (AlarmState.IDLE, False): AlarmState.IDLE,
    (AlarmState.IDLE, True): AlarmState.ACCUMULATING,
    (AlarmState.ACCUMULATING, False): AlarmState.IDLE,
    (AlarmState.ACCUMULATING, True): AlarmState.ACCUMULATING,
}


class MetricUnavailable(Exception):
    pass


class Alarm:
    def __init__(self, name, comparison, threshold, evaluation_periods,
                 statistic=Statistic.AVERAGE, action=None):
        if evaluation_periods < 1:
            raise ValueError(f"evaluation_periods must be >= 1, got {evaluation_periods}")
        self.name = name
        self.comparison = Comparison(comparison)
        self.threshold = threshold
        self.evaluation_periods = evaluation_periods
        self.statistic = Statistic(statistic)
        self.action = action
        self.state = AlarmState.IDLE
        self.streak = 0
        self.fired = 0

    def observe(self, value):
        """Feed one sample; None is a gap and changes nothing. Returns True on firing."""
        if value is None:
            return False

        breached = self.comparison.breached(value, self.threshold)
        self.state = TRANSITIONS[(self.state, breached)]
        self.streak = self.streak + 1 if breached else 0

        if self.streak < self.evaluation_periods:
            return False

        self.state = AlarmState.IDLE
        self.streak = 0
        self.fired += 1
        print(f"ALARM {self.name}: {self.statistic.value} {value:.2f} "
              f"{'>' if self.comparison is Comparison.GREATER_THAN else '<'} {self.threshold} "
              f"for {self.evaluation_periods} period(s)", flush=True)
        if self.action is not None:
            self.action()
        return True

    def status(self):
        return {
            "state": self.state.value,
            "streak": self.streak,
            "evaluation_periods": self.evaluation_periods,
            "threshold": self.threshold,
            "fired": self.fired,
        }


class MetricMonitor:
    def __init__(self, source, alarms, pool_name, period=60):
        self.source = source
        self.alarms = list(alarms)
        self.pool_name = pool_name
        self.period = period
        self._lock = threading.Lock()
        self._active = set()
        self.last_samples = {}

    def on_member_transition(self, member, old_state, new_state):
        with self._lock:
            if new_state in ACTIVE_STATES:
                self._active.add(member.member_id)
            else:
                self._active.discard(member.member_id)

    def sample(self, statistic):
        with self._lock:
            if not self._active:
                return None
        try:
            return self.source.sample(statistic, self.pool_name, self.period)
        except MetricUnavailable as e:
            print(f"Metric gap ({statistic.value}): {e}", flush=True)
            return None

    def run_once(self):
        samples = {}
        for statistic in {a.statistic for a in self.alarms}:
            samples[statistic] = self.sample(statistic)
        self.last_samples = samples

        fired = []
        for alarm in self.alarms:
            try:
                if alarm.observe(samples[alarm.statistic]):
                    fired.append(alarm.name)
            except Exception as e:
                print(f"Alarm {alarm.name} action failed: {e}", flush=True)
        return fired

    def status(self):
        return {
            "period": self.period,
            "last_samples": {s.value: v for s, v in self.last_samples.items()},
            "alarms": {a.name: a.status() for a in self.alarms},
        }
