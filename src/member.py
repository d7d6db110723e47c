from __future__ import annotations

from typing import TYPE_CHECKING

from config import get_logger
from errors import InvalidMemberReference
from group import MANAGED_LABEL_PREFIX
from scope import Scope, fan_out

if TYPE_CHECKING:
    from directory import Directory
    from store import Store

logger = get_logger(service="member")


class MemberAggregate:
    """One member across every scope it is enrolled in that has at least one rule set."""

    def __init__(self, member_id: int, store: Store, directory: Directory, only_scope: int = 0, **rule_set_options) -> None:  # noqa: ANN003, E501
        if not isinstance(member_id, int) or member_id <= 0:
            raise InvalidMemberReference(f"Invalid member id: {member_id!r}")
        if directory.get_member(member_id) is None:
            raise InvalidMemberReference(f"Member {member_id} does not exist")
        self.member_id = member_id
        self._store = store
        self._directory = directory
        self._rule_set_options = rule_set_options

        scope_ids = directory.member_scope_ids(member_id) & store.scope_ids_with_rule_sets()
        if only_scope:
            scope_ids &= {only_scope}
        self.scope_ids = sorted(scope_ids)

    def verify_membership(self) -> bool:
        if not self.scope_ids:
            logger.debug(f"Member {self.member_id} has no scopes with rule sets")
            return True
        return fan_out(self.scope_ids, self._verify_in_scope, operation="verify_membership")

    def _verify_in_scope(self, scope_id: int) -> bool:
        scope = Scope(scope_id, self._store, self._directory, **self._rule_set_options)
        return scope.verify_member(self.member_id)

    def managed_group_ids(self) -> set[int]:
        return self._store.member_group_ids(self.member_id, label_prefix=MANAGED_LABEL_PREFIX)
