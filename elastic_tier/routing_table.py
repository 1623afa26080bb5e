from collections import namedtuple

from elastic_tier.members import MemberState


Route = namedtuple("Route", ["member_id", "address"])


def derive_routing_table(members, verdicts, healthy):
    """Healthy, InService members with an address, ordered by member id.

    ``members`` maps member_id -> Member, ``verdicts`` maps member_id -> verdict.
    """
    routes = []
    for member_id in sorted(members):
        m = members[member_id]
        if m.state != MemberState.IN_SERVICE or not m.address:
            continue
        if verdicts.get(member_id) != healthy:
            continue
        routes.append(Route(member_id, m.address))
    return tuple(routes)
