"""Managed groups and the label codec that marks them.

A managed group carries a label `autogroup|<rule set id>|<classification value>`. The label is
the uniqueness key within a scope and the only link back to the owning rule set.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from config import AUTOGROUP_COMPONENT, get_logger
from entities import GroupRecord
from errors import InvalidGroupReference

if TYPE_CHECKING:
    from store import Store

logger = get_logger(service="group")

LABEL_NAMESPACE = "autogroup"
LABEL_SEPARATOR = "|"
MANAGED_LABEL_PREFIX = LABEL_NAMESPACE + LABEL_SEPARATOR


def label_prefix(rule_set_id: int) -> str:
    return f"{MANAGED_LABEL_PREFIX}{rule_set_id}{LABEL_SEPARATOR}"


def build_label(rule_set_id: int, value: str) -> str:
    return f"{label_prefix(rule_set_id)}{value}"


def is_managed_label(label: str) -> bool:
    return label.startswith(MANAGED_LABEL_PREFIX)


def parse_label(label: str) -> Optional[int]:
    """Return the rule set id encoded in a managed label, or None if it does not decode to a positive integer."""
    if not is_managed_label(label):
        return None
    parts = label.split(LABEL_SEPARATOR, 2)
    if len(parts) < 2:  # noqa: PLR2004
        return None
    try:
        rule_set_id = int(parts[1])
    except ValueError:
        return None
    return rule_set_id if rule_set_id > 0 else None


def display_name(value: str) -> str:
    return value[:1].upper() + value[1:]


class AutoGroup:
    """A group in a scope together with its current member ids."""

    def __init__(self, record: GroupRecord, store: Store, members: Optional[set[int]] = None) -> None:
        if record.id < 0 or not record.name:
            raise InvalidGroupReference(f"Invalid group record: id={record.id} name={record.name!r}")
        self.record = record
        self._store = store
        if members is None:
            members = store.group_member_ids(record.id) if record.id else set()
        self._members = members

    @classmethod
    def load(cls, store: Store, group_id: int) -> AutoGroup:
        if not isinstance(group_id, int) or group_id <= 0:
            raise InvalidGroupReference(f"Invalid group id: {group_id!r}")
        record = store.get_group(group_id)
        if record is None:
            raise InvalidGroupReference(f"Group {group_id} does not exist")
        return cls(record, store)

    @classmethod
    def new(cls, store: Store, scope_id: int, label: str, name: str) -> AutoGroup:
        return cls(GroupRecord(scope_id=scope_id, label=label, name=name), store, members=set())

    @property
    def id(self) -> int:
        return self.record.id

    @property
    def scope_id(self) -> int:
        return self.record.scope_id

    @property
    def label(self) -> str:
        return self.record.label

    @property
    def name(self) -> str:
        return self.record.name

    @property
    def members(self) -> frozenset[int]:
        return frozenset(self._members)

    def exists(self) -> bool:
        return self.record.id > 0

    def membership_count(self) -> int:
        return len(self._members)

    def is_auto_group(self) -> bool:
        return is_managed_label(self.record.label)

    def is_valid_auto_group(self) -> bool:
        """Managed label that points at a rule set which still exists in this group's scope."""
        rule_set_id = parse_label(self.record.label)
        if rule_set_id is None:
            return False
        rule_set = self._store.get_rule_set(rule_set_id)
        return rule_set is not None and rule_set.scope_id == self.record.scope_id

    def create(self) -> None:
        """Persist a new group. Raises DuplicateGroupLabel when the label is already taken in the scope."""
        if self.exists():
            return
        self.record = self._store.create_group(self.record, component=AUTOGROUP_COMPONENT)
        logger.info(
            f"Created group '{self.name}'",
            extra={"operation": "create_group", "group_id": self.id, "scope_id": self.scope_id, "label": self.label},
        )

    def update(self, **changes: str) -> bool:
        if not self.exists():
            return False
        record = self._store.update_group(self.record.model_copy(update=changes), component=AUTOGROUP_COMPONENT)
        if record is None:
            logger.info(f"Group {self.id} was deleted before it could be updated", extra={"group_id": self.id})
            return False
        self.record = record
        return True

    def rename(self, name: str) -> bool:
        if name == self.record.name:
            return False
        return self.update(name=name)

    def disassociate(self) -> bool:
        """Clear the label so the engine stops managing this group. Members are kept."""
        if not self.record.label:
            return False
        old_label = self.record.label
        updated = self.update(label="")
        if updated:
            logger.info(
                f"Disassociated group '{self.name}'",
                extra={"operation": "disassociate_group", "group_id": self.id, "old_label": old_label},
            )
        return updated

    def remove(self) -> bool:
        """Delete the group, but only while it still carries the managed marker."""
        if not self.exists() or not self.is_auto_group():
            return False
        removed = self._store.delete_group(self.id, component=AUTOGROUP_COMPONENT)
        if removed:
            logger.info(
                f"Removed group '{self.name}'",
                extra={"operation": "remove_group", "group_id": self.id, "scope_id": self.scope_id},
            )
        return removed

    def ensure_member(self, member_id: int) -> bool:
        """Add member_id if absent. Returns True only when a membership was created."""
        if member_id in self._members:
            return False
        added = self._store.add_member(self.id, member_id, component=AUTOGROUP_COMPONENT)
        self._members.add(member_id)
        if added:
            logger.info(
                f"Added member {member_id} to group '{self.name}'",
                extra={"operation": "add_member", "member_id": member_id, "group_id": self.id},
            )
        return added

    def ensure_not_member(self, member_id: int, preserve_manual: bool = True) -> bool:
        """Remove member_id if present and not manually protected. Returns True only when a membership was removed."""
        if member_id not in self._members:
            return False
        if preserve_manual and self._store.manual_assignment_exists(member_id, self.id):
            logger.debug(f"Keeping manual assignment of member {member_id} in group '{self.name}'")
            return False
        removed = self._store.remove_member(self.id, member_id, component=AUTOGROUP_COMPONENT)
        self._members.discard(member_id)
        if removed:
            logger.info(
                f"Removed member {member_id} from group '{self.name}'",
                extra={"operation": "remove_member", "member_id": member_id, "group_id": self.id},
            )
        return removed

    def refresh(self) -> bool:
        """Re-read the record and members. Returns False if the group no longer exists."""
        record = self._store.get_group(self.id)
        if record is None:
            return False
        self.record = record
        self._members = self._store.group_member_ids(self.id)
        return True

    def verify_population(self) -> bool:
        """Delete an empty managed group, or detach an orphaned one that still has members.

        Returns:
            True if the group was deleted.
        """
        if not self.refresh():
            return False
        if self.membership_count() == 0:
            return self.remove()
        if self.is_auto_group() and not self.is_valid_auto_group():
            self.disassociate()
        return False
