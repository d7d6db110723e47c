"""Routes host-system change events to reconciliation use cases.

Which events are acted upon is decided by the injected `Config`. Changes that the engine made
itself arrive tagged with `AUTOGROUP_COMPONENT` and are ignored, so a reconciliation pass never
feeds back into another one.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable

import usecases
from config import AUTOGROUP_COMPONENT, Config, get_logger
from errors import handle_errors
from events import (
    GroupCreatedEvent,
    GroupDeletedEvent,
    GroupMemberAddedEvent,
    GroupMemberRemovedEvent,
    GroupUpdatedEvent,
    MemberEnrolledEvent,
    MemberUpdatedEvent,
    RoleChangedEvent,
    RoleDeletedEvent,
    ScopeCreatedEvent,
    ScopeRestoredEvent,
)
from group import AutoGroup

if TYPE_CHECKING:
    from directory import Directory
    from events import HostEvent
    from rule_set import MembershipMovedHook
    from store import Store

logger = get_logger(service="reconciler")


def is_self_triggered(event: HostEvent) -> bool:
    return event.component == AUTOGROUP_COMPONENT


class Reconciler:
    def __init__(
        self,
        config: Config,
        store: Store,
        directory: Directory,
        hooks: Iterable[MembershipMovedHook] = (),
    ) -> None:
        self.config = config
        self.store = store
        self.directory = directory
        self.hooks = tuple(hooks)

    def dispatch(self, event: HostEvent) -> bool:  # noqa: PLR0911
        if is_self_triggered(event):
            logger.debug(f"Ignoring {type(event).__name__} raised by the engine itself")
            return True

        logger.info(f"Handling {type(event).__name__}", extra={"event": event})
        match event:
            case MemberEnrolledEvent():
                return self.handle_member_enrolled(event)
            case RoleChangedEvent():
                return self.handle_role_changed(event)
            case GroupMemberAddedEvent():
                return self.handle_group_member_added(event)
            case GroupMemberRemovedEvent():
                return self.handle_group_member_removed(event)
            case MemberUpdatedEvent():
                return self.handle_member_updated(event)
            case GroupCreatedEvent():
                return self.handle_group_created(event)
            case GroupUpdatedEvent():
                return self.handle_group_updated(event)
            case GroupDeletedEvent():
                return self.handle_group_deleted(event)
            case RoleDeletedEvent():
                return self.handle_role_deleted(event)
            case ScopeCreatedEvent():
                return self.handle_scope_added(event, self.config.add_to_new_scopes)
            case ScopeRestoredEvent():
                return self.handle_scope_added(event, self.config.add_to_restored_scopes)

        logger.warning("Got unexpected event", extra={"event": event})
        return False

    # -----------------Enrolment and roles-----------------#

    @handle_errors
    def handle_member_enrolled(self, event: MemberEnrolledEvent) -> bool:
        if not self.config.listen_for_role_changes:
            return True
        return usecases.verify_member_in_scope(
            self.config, self.store, self.directory, event.member_id, event.scope_id, self.hooks
        )

    @handle_errors
    def handle_role_changed(self, event: RoleChangedEvent) -> bool:
        if not self.config.listen_for_role_changes:
            return True
        if event.scope_id:
            return usecases.verify_member_in_scope(
                self.config, self.store, self.directory, event.member_id, event.scope_id, self.hooks
            )
        return usecases.verify_member(self.config, self.store, self.directory, event.member_id, self.hooks)

    @handle_errors
    def handle_role_deleted(self, event: RoleDeletedEvent) -> bool:
        removed = self.store.delete_role_references(event.role_id)
        self.config = self.config.without_role(event.role_id)
        logger.info(
            f"Purged deleted role {event.role_id} from {removed} rule sets",
            extra={"operation": "purge_role", "role_id": event.role_id},
        )
        return True

    # -----------------Group membership-----------------#

    @handle_errors
    def handle_group_member_added(self, event: GroupMemberAddedEvent) -> bool:
        group = AutoGroup.load(self.store, event.group_id)
        if group.is_valid_auto_group() and self.store.add_manual_assignment(event.member_id, group.id):
            logger.info(
                f"Recorded manual assignment of member {event.member_id} to group '{group.name}'",
                extra={"operation": "record_manual_assignment", "member_id": event.member_id, "group_id": group.id},
            )
        if not self.config.listen_for_group_membership:
            return True
        return usecases.verify_member_in_scope(
            self.config, self.store, self.directory, event.member_id, group.scope_id, self.hooks
        )

    @handle_errors
    def handle_group_member_removed(self, event: GroupMemberRemovedEvent) -> bool:
        if self.store.delete_manual_assignment(event.member_id, event.group_id):
            logger.info(
                f"Deleted manual assignment of member {event.member_id} to group {event.group_id}",
                extra={"operation": "delete_manual_assignment", "member_id": event.member_id, "group_id": event.group_id},
            )

        record = self.store.get_group(event.group_id)
        scope_id = event.scope_id or (record.scope_id if record else 0)

        result = True
        if self.config.listen_for_group_membership and scope_id:
            result = usecases.verify_member_in_scope(
                self.config, self.store, self.directory, event.member_id, scope_id, self.hooks
            )
        if record is not None:
            usecases.verify_group_population(self.config, self.store, event.group_id)
        return result

    @handle_errors
    def handle_member_updated(self, event: MemberUpdatedEvent) -> bool:
        if not self.config.listen_for_profile_changes:
            return True
        return usecases.verify_member(self.config, self.store, self.directory, event.member_id, self.hooks)

    # -----------------Groups-----------------#

    @handle_errors
    def handle_group_created(self, event: GroupCreatedEvent) -> bool:
        if not self.config.listen_for_group_changes:
            return True
        usecases.verify_group_label(self.config, self.store, event.group_id)
        return True

    @handle_errors
    def handle_group_updated(self, event: GroupUpdatedEvent) -> bool:
        if not self.config.listen_for_group_changes:
            return True
        usecases.verify_group_label(self.config, self.store, event.group_id)
        return usecases.verify_scope(self.config, self.store, self.directory, event.scope_id, self.hooks)

    @handle_errors
    def handle_group_deleted(self, event: GroupDeletedEvent) -> bool:
        purged = self.store.delete_manual_assignments_for_group(event.group_id)
        if purged:
            logger.info(
                f"Purged {purged} manual assignments of deleted group {event.group_id}",
                extra={"operation": "purge_manual_assignments", "group_id": event.group_id},
            )
        if not self.config.listen_for_group_changes:
            return True
        return usecases.verify_scope(self.config, self.store, self.directory, event.scope_id, self.hooks)

    # -----------------Scopes-----------------#

    @handle_errors
    def handle_scope_added(self, event: ScopeCreatedEvent | ScopeRestoredEvent, enabled: bool) -> bool:
        if not enabled:
            return True
        return usecases.add_default_to_scope(self.config, self.store, self.directory, event.scope_id, self.hooks)
