from typing import Literal, Union

from pydantic import RootModel

from entities.model import BaseModel


class HostEvent(BaseModel):
    # Name of the component that performed the change, "autogroup" for the engine itself.
    component: str = ""


class MemberEnrolledEvent(HostEvent):
    event_kind: Literal["member_enrolled"]
    scope_id: int
    member_id: int


class RoleChangedEvent(HostEvent):
    event_kind: Literal["role_assigned", "role_unassigned"]
    member_id: int
    scope_id: int = 0
    role_id: int = 0


class GroupMemberAddedEvent(HostEvent):
    event_kind: Literal["group_member_added"]
    group_id: int
    member_id: int
    scope_id: int = 0


class GroupMemberRemovedEvent(HostEvent):
    event_kind: Literal["group_member_removed"]
    group_id: int
    member_id: int
    scope_id: int = 0


class MemberUpdatedEvent(HostEvent):
    event_kind: Literal["member_updated"]
    member_id: int


class GroupCreatedEvent(HostEvent):
    event_kind: Literal["group_created"]
    group_id: int
    scope_id: int = 0


class GroupUpdatedEvent(HostEvent):
    event_kind: Literal["group_updated"]
    group_id: int
    scope_id: int


class GroupDeletedEvent(HostEvent):
    event_kind: Literal["group_deleted"]
    group_id: int
    scope_id: int


class RoleDeletedEvent(HostEvent):
    event_kind: Literal["role_deleted"]
    role_id: int


class ScopeCreatedEvent(HostEvent):
    event_kind: Literal["scope_created"]
    scope_id: int


class ScopeRestoredEvent(HostEvent):
    event_kind: Literal["scope_restored"]
    scope_id: int


Event = RootModel[
    Union[
        MemberEnrolledEvent,
        RoleChangedEvent,
        GroupMemberAddedEvent,
        GroupMemberRemovedEvent,
        MemberUpdatedEvent,
        GroupCreatedEvent,
        GroupUpdatedEvent,
        GroupDeletedEvent,
        RoleDeletedEvent,
        ScopeCreatedEvent,
        ScopeRestoredEvent,
    ]
]
