from __future__ import annotations

from typing import TYPE_CHECKING, Callable, Iterable, Optional, TypeVar

from config import get_logger
from errors import InvalidMemberReference, InvalidReference, InvalidScopeReference, PersistenceFailure
from rule_set import RuleSet

if TYPE_CHECKING:
    from directory import Directory
    from store import Store

logger = get_logger(service="scope")

T = TypeVar("T")


def fan_out(items: Iterable[T], fn: Callable[[T], bool], operation: str) -> bool:
    """Run fn for every item without stopping early.

    Invalid references mark the result False. The first PersistenceFailure is re-raised once
    every item has been processed.
    """
    result = True
    failure: Optional[PersistenceFailure] = None
    for item in items:
        try:
            result &= fn(item)
        except InvalidReference as e:
            logger.warning(f"{operation}: skipping {item}: {e}", extra={"operation": operation})
            result = False
        except PersistenceFailure as e:
            logger.exception(f"{operation}: persistence failure on {item}: {e}", extra={"operation": operation})
            result = False
            if failure is None:
                failure = e
    if failure is not None:
        raise failure
    return result


class Scope:
    """All rule sets of one scope, verified against the scope's enrolled members."""

    def __init__(self, scope_id: int, store: Store, directory: Directory, **rule_set_options) -> None:  # noqa: ANN003
        if not isinstance(scope_id, int) or scope_id <= 0:
            raise InvalidScopeReference(f"Invalid scope id: {scope_id!r}")
        self.scope_id = scope_id
        self._store = store
        self._directory = directory
        self.rule_sets = RuleSet.for_scope(store, directory, scope_id, **rule_set_options)

    def verify_all_members(self) -> bool:
        member_ids = self._directory.scope_member_ids(self.scope_id)
        logger.info(
            f"Verifying {len(member_ids)} members in scope {self.scope_id}",
            extra={"scope_id": self.scope_id, "rule_sets": [r.id for r in self.rule_sets]},
        )
        return fan_out(member_ids, self.verify_member, operation="verify_scope")

    def verify_member(self, member_id: int) -> bool:
        member = self._directory.get_member(member_id)
        if member is None:
            raise InvalidMemberReference(f"Member {member_id} does not exist")
        roles = self._directory.member_roles(self.scope_id, member_id)
        return fan_out(self.rule_sets, lambda rule_set: rule_set.verify_member(member, roles), operation="verify_member")

    def membership_counts(self) -> dict[int, int]:
        counts: dict[int, int] = {}
        for rule_set in self.rule_sets:
            counts.update(rule_set.membership_counts())
        return counts
