"""Read-only view of the hosting system: members, enrolments, roles and custom profile fields.

The engine never writes through this interface. Classifiers use the attribute-source half
(`custom_fields`, `custom_field_value`), aggregates use the enrolment half.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Protocol

from entities import Member


class AttributeSource(Protocol):
    def custom_fields(self, datatype: Optional[str] = None) -> dict[str, str]:
        """Custom profile field id -> display name, optionally restricted to one datatype."""
        ...

    def custom_field_value(self, member_id: int, field_id: str) -> Optional[str]:
        ...


class Directory(AttributeSource, Protocol):
    def get_member(self, member_id: int) -> Optional[Member]:
        ...

    def scope_member_ids(self, scope_id: int) -> list[int]:
        """Members currently enrolled in a scope."""
        ...

    def member_scope_ids(self, member_id: int) -> set[int]:
        """Scopes a member is currently enrolled in."""
        ...

    def member_roles(self, scope_id: int, member_id: int) -> set[int]:
        ...


@dataclass(frozen=True)
class CustomField:
    id: str
    name: str
    datatype: str = "text"


@dataclass
class InMemoryDirectory:
    members: dict[int, Member] = field(default_factory=dict)
    fields: dict[str, CustomField] = field(default_factory=dict)
    field_values: dict[tuple[int, str], str] = field(default_factory=dict)
    # scope_id -> member_id -> role ids
    enrolments: dict[int, dict[int, set[int]]] = field(default_factory=dict)

    def add_member(self, member: Member) -> Member:
        self.members[member.id] = member
        return member

    def add_custom_field(self, field_id: str, name: str, datatype: str = "text") -> CustomField:
        custom_field = CustomField(id=field_id, name=name, datatype=datatype)
        self.fields[field_id] = custom_field
        return custom_field

    def set_custom_field_value(self, member_id: int, field_id: str, value: str) -> None:
        self.field_values[(member_id, field_id)] = value

    def enrol(self, scope_id: int, member_id: int, roles: set[int] | None = None) -> None:
        self.enrolments.setdefault(scope_id, {})[member_id] = set(roles or ())

    def unenrol(self, scope_id: int, member_id: int) -> None:
        self.enrolments.get(scope_id, {}).pop(member_id, None)

    def get_member(self, member_id: int) -> Optional[Member]:
        return self.members.get(member_id)

    def scope_member_ids(self, scope_id: int) -> list[int]:
        return sorted(self.enrolments.get(scope_id, {}))

    def member_scope_ids(self, member_id: int) -> set[int]:
        return {scope_id for scope_id, enrolled in self.enrolments.items() if member_id in enrolled}

    def member_roles(self, scope_id: int, member_id: int) -> set[int]:
        return set(self.enrolments.get(scope_id, {}).get(member_id, set()))

    def custom_fields(self, datatype: Optional[str] = None) -> dict[str, str]:
        return {f.id: f.name for f in self.fields.values() if datatype is None or f.datatype == datatype}

    def custom_field_value(self, member_id: int, field_id: str) -> Optional[str]:
        return self.field_values.get((member_id, field_id))
