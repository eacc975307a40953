"""Role-indexed transition table for reviewable records."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from reviewdesk.core.models import (
    Action,
    CA_ROLES,
    CLIENT_ROLES,
    CLOSED,
    CLOSURE_REQUESTED,
    EntityKind,
    OPEN,
    PENDING_CA_APPROVAL,
    PENDING_MASTER_ADMIN_APPROVAL,
    REJECTED_BY_CA,
    REJECTED_BY_MASTER_ADMIN,
    Role,
    STATUSES_BY_KIND,
    TERMINAL_STATUSES,
    VERIFIED,
)


@dataclass(frozen=True)
class Transition:
    kind: EntityKind
    from_status: str
    role: Role
    action: Action
    to_status: str
    requires_remarks: bool = False


TransitionKey = Tuple[EntityKind, str, Role, Action]


def _rules(
    kinds: Iterable[EntityKind],
    from_status: str,
    roles: Iterable[Role],
    action: Action,
    to_status: str,
    requires_remarks: bool = False,
) -> List[Transition]:
    return [
        Transition(kind, from_status, role, action, to_status, requires_remarks)
        for kind in kinds
        for role in roles
    ]


FINANCE_KINDS = (EntityKind.INVOICE, EntityKind.VOUCHER)
WORK_ITEM_KINDS = (EntityKind.NOTICE, EntityKind.TASK)
MASTER_ADMIN = (Role.CLIENT_MASTER_ADMIN,)


DEFAULT_RULES: List[Transition] = [
    # Client master admin gate
    *_rules(FINANCE_KINDS, PENDING_MASTER_ADMIN_APPROVAL, MASTER_ADMIN, Action.APPROVE, PENDING_CA_APPROVAL),
    *_rules(FINANCE_KINDS, PENDING_MASTER_ADMIN_APPROVAL, MASTER_ADMIN, Action.REJECT, REJECTED_BY_MASTER_ADMIN, True),
    # CA verification gate
    *_rules(FINANCE_KINDS, PENDING_CA_APPROVAL, CA_ROLES, Action.APPROVE, VERIFIED),
    *_rules(FINANCE_KINDS, PENDING_CA_APPROVAL, CA_ROLES, Action.TAG, VERIFIED),
    *_rules(FINANCE_KINDS, PENDING_CA_APPROVAL, CA_ROLES, Action.REJECT, REJECTED_BY_CA, True),
    # Vouchers rejected by the CA can still be tagged straight to verified
    *_rules((EntityKind.VOUCHER,), REJECTED_BY_CA, CA_ROLES, Action.TAG, VERIFIED),
    # Rejections go back to the client
    *_rules(FINANCE_KINDS, REJECTED_BY_MASTER_ADMIN, CLIENT_ROLES, Action.RESUBMIT, PENDING_MASTER_ADMIN_APPROVAL),
    *_rules(FINANCE_KINDS, REJECTED_BY_CA, CLIENT_ROLES, Action.RESUBMIT, PENDING_MASTER_ADMIN_APPROVAL),
    # Closure lifecycle
    *_rules(WORK_ITEM_KINDS, OPEN, (Role.ASSIGNEE,), Action.REQUEST_CLOSE, CLOSURE_REQUESTED),
    *_rules(WORK_ITEM_KINDS, CLOSURE_REQUESTED, (Role.CREATOR,), Action.APPROVE_CLOSE, CLOSED),
    *_rules(WORK_ITEM_KINDS, CLOSURE_REQUESTED, (Role.CREATOR,), Action.REJECT_CLOSE, OPEN, True),
]


class TransitionTable:
    """
    Immutable lookup of (kind, from_status, role, action) -> Transition.

    Each key maps to exactly one outcome; duplicate keys and statuses outside
    the kind's vocabulary are rejected at construction.
    """

    def __init__(self, rules: Iterable[Transition]):
        table: Dict[TransitionKey, Transition] = {}
        for rule in rules:
            statuses = STATUSES_BY_KIND[rule.kind]
            if rule.from_status not in statuses or rule.to_status not in statuses:
                raise ValueError(
                    f"Unknown status in rule: {rule.kind.value} {rule.from_status} -> {rule.to_status}"
                )
            key = (rule.kind, rule.from_status, rule.role, rule.action)
            if key in table:
                raise ValueError(f"Duplicate transition rule for {key}")
            table[key] = rule
        self._table = table

    def lookup(self, kind: EntityKind, from_status: str, role: Role, action: Action) -> Optional[Transition]:
        return self._table.get((kind, from_status, role, action))

    def rules_from(self, kind: EntityKind, from_status: str) -> List[Transition]:
        return [
            rule for (k, status, _role, _action), rule in self._table.items()
            if k == kind and status == from_status
        ]

    def dead_end_statuses(self, kind: EntityKind) -> List[str]:
        """Statuses with no outgoing rule that are not terminal (should be empty)."""
        return sorted(
            status for status in STATUSES_BY_KIND[kind]
            if status not in TERMINAL_STATUSES and not self.rules_from(kind, status)
        )

    def __iter__(self):
        return iter(self._table.values())

    def __len__(self) -> int:
        return len(self._table)


DEFAULT_TABLE = TransitionTable(DEFAULT_RULES)
