"""Entry points the driver (and embedding code) call into.

Each function builds the aggregates it needs from the injected store and directory, runs one
reconciliation unit and returns whether it completed cleanly.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Iterable, Optional

from classifier import list_classifiers
from config import Config, get_logger
from entities import BaseModel, ClassifierConfig
from errors import InvalidClassificationConfig
from group import AutoGroup
from member import MemberAggregate
from rule_set import MembershipMovedHook, RuleSet
from scope import Scope

if TYPE_CHECKING:
    from directory import Directory
    from store import Store

logger = get_logger(service="usecases")


class RuleSetSummary(BaseModel):
    id: int
    scope_id: int
    classifier: str
    classifier_name: str
    grouping_by: Optional[str]
    grouping_by_text: Optional[str]
    delimited_by: Optional[str]
    eligible_roles: frozenset[int]
    group_count: int
    membership_counts: dict[int, int]


def rule_set_options(cfg: Config, hooks: Iterable[MembershipMovedHook] = ()) -> dict[str, Any]:
    return {
        "default_roles": cfg.default_eligible_roles,
        "preserve_manual": cfg.preserve_manual_assignments,
        "hooks": tuple(hooks),
    }


def verify_member_in_scope(  # noqa: PLR0913
    cfg: Config,
    store: Store,
    directory: Directory,
    member_id: int,
    scope_id: int,
    hooks: Iterable[MembershipMovedHook] = (),
) -> bool:
    aggregate = MemberAggregate(member_id, store, directory, only_scope=scope_id, **rule_set_options(cfg, hooks))
    return aggregate.verify_membership()


def verify_member(
    cfg: Config,
    store: Store,
    directory: Directory,
    member_id: int,
    hooks: Iterable[MembershipMovedHook] = (),
) -> bool:
    aggregate = MemberAggregate(member_id, store, directory, **rule_set_options(cfg, hooks))
    return aggregate.verify_membership()


def verify_scope(
    cfg: Config,
    store: Store,
    directory: Directory,
    scope_id: int,
    hooks: Iterable[MembershipMovedHook] = (),
) -> bool:
    scope = Scope(scope_id, store, directory, **rule_set_options(cfg, hooks))
    if not scope.rule_sets:
        logger.debug(f"Scope {scope_id} has no rule sets")
        return True
    return scope.verify_all_members()


def verify_group_population(cfg: Config, store: Store, group_id: int) -> bool:
    """Delete the group if it is empty and still managed. Returns True if it was deleted."""
    if not cfg.enabled:
        return False
    return AutoGroup.load(store, group_id).verify_population()


def verify_group_label(cfg: Config, store: Store, group_id: int) -> bool:
    """Handle a group that claims a rule set which does not exist in its scope.

    An empty orphan is deleted, one with members only loses its label.

    Returns:
        True if the group was deleted or its label was cleared.
    """
    if not cfg.enabled:
        return False
    group = AutoGroup.load(store, group_id)
    if not group.is_auto_group() or group.is_valid_auto_group():
        return False
    if group.membership_count() == 0:
        return group.remove()
    return group.disassociate()


def add_default_to_scope(
    cfg: Config,
    store: Store,
    directory: Directory,
    scope_id: int,
    hooks: Iterable[MembershipMovedHook] = (),
) -> bool:
    """Create the configured default rule set in a scope that has none, then verify the scope.

    A scope that already has rule sets is left alone and counts as success. Returns False when the
    default cannot be built or the verification failed.
    """
    if store.rule_sets_for_scope(scope_id):
        logger.debug(f"Scope {scope_id} already has rule sets, not adding default")
        return True

    rule_set = RuleSet.new(store, directory, scope_id, **rule_set_options(cfg, hooks))
    try:
        rule_set.set_classifier(cfg.default_classifier)
        rule_set.set_options(ClassifierConfig(field=cfg.default_classifier_field))
    except InvalidClassificationConfig as e:
        logger.warning(f"Cannot add default rule set to scope {scope_id}: {e}")
        return False
    rule_set.save()
    logger.info(
        f"Added default rule set to scope {scope_id}",
        extra={"operation": "add_default_rule_set", "rule_set_id": rule_set.id, "scope_id": scope_id},
    )
    return verify_scope(cfg, store, directory, scope_id, hooks)


def list_rule_sets(store: Store, directory: Directory, scope_id: int) -> list[RuleSetSummary]:
    names = list_classifiers()
    summaries = []
    for rule_set in RuleSet.for_scope(store, directory, scope_id):
        summaries.append(
            RuleSetSummary(
                id=rule_set.id,
                scope_id=rule_set.scope_id,
                classifier=rule_set.record.classifier,
                classifier_name=names[rule_set.record.classifier],
                grouping_by=rule_set.grouping_by(),
                grouping_by_text=rule_set.grouping_by_text(),
                delimited_by=rule_set.delimited_by(),
                eligible_roles=rule_set.eligible_roles,
                group_count=rule_set.group_count,
                membership_counts=rule_set.membership_counts(),
            )
        )
    return summaries
