"""
Value types passed between the stages of a flattening run.

Directory objects are converted into these types as soon as they leave the
gateway, so the rest of the pipeline never touches raw ldap3 entries.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, Iterator, Optional, Tuple


@dataclass(frozen=True)
class GroupRef:
    """A directory group, identified by its distinguished name."""

    dn: str
    name: str
    server: Optional[str] = None

    def __eq__(self, other):
        if not isinstance(other, GroupRef):
            return NotImplemented
        return self.dn.lower() == other.dn.lower()

    def __hash__(self):
        return hash(self.dn.lower())

    def __str__(self):
        return self.name


@dataclass(frozen=True)
class Principal:
    """
    A leaf member of a group.

    Two principals are the same principal iff their SIDs match. The account
    name is only used for display and ordering.
    """

    sid: str
    account_name: str
    dn: Optional[str] = None

    def __eq__(self, other):
        if not isinstance(other, Principal):
            return NotImplemented
        return self.sid == other.sid

    def __hash__(self):
        return hash(self.sid)

    def __str__(self):
        return self.account_name


def _name_key(group: GroupRef) -> Tuple[str, str]:
    return (group.name.lower(), group.dn.lower())


@dataclass(frozen=True)
class Pair:
    """One source group and the target groups that mirror it."""

    source: GroupRef
    targets: Tuple[GroupRef, ...]

    def __post_init__(self):
        if not self.targets:
            raise ValueError(f"Pair for {self.source.name} needs at least one target group")
        object.__setattr__(self, 'targets', tuple(sorted(self.targets, key=_name_key)))


def _principal_key(principal: Principal) -> Tuple[str, str]:
    return (principal.account_name.lower(), principal.sid)


class MembershipSnapshot:
    """
    Resolved members of one group at one point in time.

    Members are deduplicated by SID and kept ordered by account name so that
    diffs and log output are stable between runs.
    """

    def __init__(self, group: GroupRef, principals: Iterable[Principal]):
        unique: Dict[str, Principal] = {}
        for principal in principals:
            unique.setdefault(principal.sid, principal)

        self.group = group
        self.principals: Tuple[Principal, ...] = tuple(sorted(unique.values(), key=_principal_key))
        self.ids = frozenset(unique)

    def __iter__(self) -> Iterator[Principal]:
        return iter(self.principals)

    def __len__(self) -> int:
        return len(self.principals)

    def __contains__(self, principal) -> bool:
        return isinstance(principal, Principal) and principal.sid in self.ids

    def __repr__(self):
        return f"MembershipSnapshot({self.group.name!r}, {len(self)} members)"


@dataclass(frozen=True)
class DiffResult:
    """Principals to add to and remove from a target group."""

    missing: Tuple[Principal, ...] = ()
    obsolete: Tuple[Principal, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.missing and not self.obsolete

    @property
    def change_count(self) -> int:
        return len(self.missing) + len(self.obsolete)


class ChangeAction(Enum):
    ADD = 'Add'
    REMOVE = 'Remove'


@dataclass(frozen=True)
class ChangeRecord:
    """One membership change, applied or planned."""

    source_group: str
    target_group: str
    account_name: str
    action: ChangeAction

    def to_dict(self) -> Dict[str, str]:
        return {
            'SourceGroup': self.source_group,
            'TargetGroup': self.target_group,
            'AccountName': self.account_name,
            'Action': self.action.value,
        }
