"""Set difference between a source snapshot and a target snapshot."""

from group_flatten.models import DiffResult, MembershipSnapshot


def compute_diff(source: MembershipSnapshot, target: MembershipSnapshot) -> DiffResult:
    """
    Work out what a target group needs to match its source.

    Principals are compared by SID only. Both result tuples keep the order
    of the snapshot they came from.

    Args:
        source: Recursive membership of the source group
        target: Direct membership of the target group

    Returns:
        DiffResult with the principals missing from the target and the
        principals the target holds that the source does not
    """
    missing = tuple(p for p in source if p.sid not in target.ids)
    obsolete = tuple(p for p in target if p.sid not in source.ids)
    return DiffResult(missing=missing, obsolete=obsolete)
