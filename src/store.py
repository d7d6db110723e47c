"""Persistence boundary for rule sets, groups, memberships and manual assignments.

Every write that touches a group or a membership takes the `component` that performed it, so
the hosting system can tell engine mutations apart from everybody else's. Membership writes are
idempotent and report whether they changed anything. Group creation must be unique per
(scope_id, label): a second create with the same pair raises `DuplicateGroupLabel`. Updating a
group that no longer exists writes nothing and returns None.
"""

from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal, Optional, Protocol

from config import get_logger
from entities import GroupRecord, ManualAssignment, RuleSetRecord
from errors import DuplicateGroupLabel

logger = get_logger(service="store")


class Store(Protocol):
    # Rule sets
    def get_rule_set(self, rule_set_id: int) -> Optional[RuleSetRecord]: ...
    def rule_sets_for_scope(self, scope_id: int) -> list[RuleSetRecord]: ...
    def scope_ids_with_rule_sets(self) -> set[int]: ...
    def save_rule_set(self, record: RuleSetRecord) -> RuleSetRecord: ...
    def delete_rule_set(self, rule_set_id: int) -> bool: ...

    # Eligible roles
    def get_eligible_roles(self, rule_set_id: int) -> set[int]: ...
    def add_eligible_roles(self, rule_set_id: int, role_ids: set[int]) -> None: ...
    def remove_eligible_roles(self, rule_set_id: int, role_ids: set[int]) -> None: ...
    def delete_role_references(self, role_id: int) -> int: ...

    # Groups
    def get_group(self, group_id: int) -> Optional[GroupRecord]: ...
    def get_group_by_label(self, scope_id: int, label: str) -> Optional[GroupRecord]: ...
    def groups_with_label_prefix(self, scope_id: int, prefix: str) -> list[GroupRecord]: ...
    def create_group(self, record: GroupRecord, component: str) -> GroupRecord: ...
    def update_group(self, record: GroupRecord, component: str) -> Optional[GroupRecord]: ...
    def delete_group(self, group_id: int, component: str) -> bool: ...

    # Memberships
    def group_member_ids(self, group_id: int) -> set[int]: ...
    def member_group_ids(self, member_id: int, label_prefix: str = "") -> set[int]: ...
    def add_member(self, group_id: int, member_id: int, component: str) -> bool: ...
    def remove_member(self, group_id: int, member_id: int, component: str) -> bool: ...

    # Manual assignments
    def manual_assignment_exists(self, member_id: int, group_id: int) -> bool: ...
    def add_manual_assignment(self, member_id: int, group_id: int) -> bool: ...
    def delete_manual_assignment(self, member_id: int, group_id: int) -> bool: ...
    def delete_manual_assignments_for_group(self, group_id: int) -> int: ...


MutationKind = Literal["group_created", "group_updated", "group_deleted", "member_added", "member_removed"]


@dataclass(frozen=True)
class Mutation:
    """One write against a group or a membership, as observed by the store."""

    kind: MutationKind
    group_id: int
    member_id: int
    component: str


def now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryStore:
    """Thread-safe in-process store.

    Keeps a log of every group and membership mutation with the component that made it.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._rule_set_ids = itertools.count(1)
        self._group_ids = itertools.count(1)
        self.rule_sets: dict[int, RuleSetRecord] = {}
        self.eligible_roles: dict[int, set[int]] = {}
        self.groups: dict[int, GroupRecord] = {}
        self.memberships: dict[int, set[int]] = {}
        self.manual_assignments: set[ManualAssignment] = set()
        self.mutations: list[Mutation] = []

    def _log(self, kind: MutationKind, group_id: int, member_id: int, component: str) -> None:
        logger.debug(f"{kind} group={group_id} member={member_id}", extra={"component": component})
        self.mutations.append(Mutation(kind=kind, group_id=group_id, member_id=member_id, component=component))

    # -----------------Rule sets-----------------#

    def get_rule_set(self, rule_set_id: int) -> Optional[RuleSetRecord]:
        return self.rule_sets.get(rule_set_id)

    def rule_sets_for_scope(self, scope_id: int) -> list[RuleSetRecord]:
        with self._lock:
            return [r for _, r in sorted(self.rule_sets.items()) if r.scope_id == scope_id]

    def scope_ids_with_rule_sets(self) -> set[int]:
        with self._lock:
            return {r.scope_id for r in self.rule_sets.values()}

    def save_rule_set(self, record: RuleSetRecord) -> RuleSetRecord:
        with self._lock:
            if record.id == 0:
                record = record.model_copy(update={"id": next(self._rule_set_ids)})
            self.rule_sets[record.id] = record
        return record

    def delete_rule_set(self, rule_set_id: int) -> bool:
        with self._lock:
            self.eligible_roles.pop(rule_set_id, None)
            return self.rule_sets.pop(rule_set_id, None) is not None

    # -----------------Eligible roles-----------------#

    def get_eligible_roles(self, rule_set_id: int) -> set[int]:
        with self._lock:
            return set(self.eligible_roles.get(rule_set_id, set()))

    def add_eligible_roles(self, rule_set_id: int, role_ids: set[int]) -> None:
        with self._lock:
            self.eligible_roles.setdefault(rule_set_id, set()).update(role_ids)

    def remove_eligible_roles(self, rule_set_id: int, role_ids: set[int]) -> None:
        with self._lock:
            self.eligible_roles.get(rule_set_id, set()).difference_update(role_ids)

    def delete_role_references(self, role_id: int) -> int:
        removed = 0
        with self._lock:
            for roles in self.eligible_roles.values():
                if role_id in roles:
                    roles.discard(role_id)
                    removed += 1
        return removed

    # -----------------Groups-----------------#

    def get_group(self, group_id: int) -> Optional[GroupRecord]:
        return self.groups.get(group_id)

    def get_group_by_label(self, scope_id: int, label: str) -> Optional[GroupRecord]:
        with self._lock:
            for group in self.groups.values():
                if group.scope_id == scope_id and group.label == label:
                    return group
        return None

    def groups_with_label_prefix(self, scope_id: int, prefix: str) -> list[GroupRecord]:
        with self._lock:
            return [g for _, g in sorted(self.groups.items()) if g.scope_id == scope_id and g.label.startswith(prefix)]

    def create_group(self, record: GroupRecord, component: str) -> GroupRecord:
        with self._lock:
            if record.label and self.get_group_by_label(record.scope_id, record.label) is not None:
                raise DuplicateGroupLabel(record.scope_id, record.label)
            record = record.model_copy(update={"id": next(self._group_ids), "created_at": now()})
            self.groups[record.id] = record
            self.memberships[record.id] = set()
            self._log("group_created", record.id, 0, component)
        return record

    def update_group(self, record: GroupRecord, component: str) -> Optional[GroupRecord]:
        with self._lock:
            if record.id not in self.groups:
                return None
            if record.label:
                existing = self.get_group_by_label(record.scope_id, record.label)
                if existing is not None and existing.id != record.id:
                    raise DuplicateGroupLabel(record.scope_id, record.label)
            record = record.model_copy(update={"modified_at": now()})
            self.groups[record.id] = record
            self._log("group_updated", record.id, 0, component)
        return record

    def delete_group(self, group_id: int, component: str) -> bool:
        with self._lock:
            if self.groups.pop(group_id, None) is None:
                return False
            self.memberships.pop(group_id, None)
            self.manual_assignments = {m for m in self.manual_assignments if m.group_id != group_id}
            self._log("group_deleted", group_id, 0, component)
        return True

    # -----------------Memberships-----------------#

    def group_member_ids(self, group_id: int) -> set[int]:
        with self._lock:
            return set(self.memberships.get(group_id, set()))

    def member_group_ids(self, member_id: int, label_prefix: str = "") -> set[int]:
        with self._lock:
            return {
                group_id
                for group_id, members in self.memberships.items()
                if member_id in members and self.groups[group_id].label.startswith(label_prefix)
            }

    def add_member(self, group_id: int, member_id: int, component: str) -> bool:
        with self._lock:
            members = self.memberships.get(group_id)
            if members is None or member_id in members:
                return False
            members.add(member_id)
            self._log("member_added", group_id, member_id, component)
        return True

    def remove_member(self, group_id: int, member_id: int, component: str) -> bool:
        with self._lock:
            members = self.memberships.get(group_id)
            if members is None or member_id not in members:
                return False
            members.discard(member_id)
            self._log("member_removed", group_id, member_id, component)
        return True

    # -----------------Manual assignments-----------------#

    def manual_assignment_exists(self, member_id: int, group_id: int) -> bool:
        with self._lock:
            return ManualAssignment(member_id=member_id, group_id=group_id) in self.manual_assignments

    def add_manual_assignment(self, member_id: int, group_id: int) -> bool:
        assignment = ManualAssignment(member_id=member_id, group_id=group_id)
        with self._lock:
            if assignment in self.manual_assignments:
                return False
            self.manual_assignments.add(assignment)
        return True

    def delete_manual_assignment(self, member_id: int, group_id: int) -> bool:
        assignment = ManualAssignment(member_id=member_id, group_id=group_id)
        with self._lock:
            if assignment not in self.manual_assignments:
                return False
            self.manual_assignments.discard(assignment)
        return True

    def delete_manual_assignments_for_group(self, group_id: int) -> int:
        with self._lock:
            before = len(self.manual_assignments)
            self.manual_assignments = {m for m in self.manual_assignments if m.group_id != group_id}
            return before - len(self.manual_assignments)
