import itertools


class Unavailable:
    """Returned by route() when no member is eligible for traffic."""

    reason = "no healthy members"

    def __bool__(self):
        return False

    def __repr__(self):
        return "Unavailable"


UNAVAILABLE = Unavailable()


class TrafficRouter:
    def __init__(self):
        self._table = ()
        self._counter = itertools.count()
        self.routed = 0
        self.unavailable = 0

    def update(self, table):
        self._table = tuple(table)

    @property
    def table(self):
        return self._table

    def route(self, request=None):
        table = self._table
        if not table:
            self.unavailable += 1
            return UNAVAILABLE
        self.routed += 1
        return table[next(self._counter) % len(table)]

    def status(self):
        return {
            "routable": len(self._table),
            "members": [r.member_id for r in self._table],
            "routed": self.routed,
            "unavailable": self.unavailable,
        }
