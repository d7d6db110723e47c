"""Rule sets: one classifier plus an eligibility allow-list, and the managed groups they own.

A rule set is tied to one scope. `verify_member` is the reconciliation pass for one member:
it computes the groups the member belongs in, adds the member to them (creating groups on
demand) and takes the member out of every other group the rule set owns, except memberships
protected by a manual assignment.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Callable, Iterable, Optional

from classifier import CLASSIFIERS, Classifier, get_classifier
from config import get_logger
from entities import ClassifierConfig, Member, RuleSetRecord
from errors import DuplicateGroupLabel, InvalidClassificationConfig, InvalidRuleSetReference, PersistenceFailure
from group import AutoGroup, build_label, display_name, label_prefix
from store import now

if TYPE_CHECKING:
    from directory import AttributeSource
    from store import Store

logger = get_logger(service="rule_set")

# (scope_id, member_id, old_group_id, new_group_id)
MembershipMovedHook = Callable[[int, int, int, int], None]


class RuleSet:
    def __init__(  # noqa: PLR0913
        self,
        record: RuleSetRecord,
        store: Store,
        source: AttributeSource,
        default_roles: Iterable[int] = (),
        preserve_manual: bool = True,
        hooks: Iterable[MembershipMovedHook] = (),
    ) -> None:
        if record.id < 0:
            raise InvalidRuleSetReference(f"Invalid rule set id: {record.id}")
        if record.classifier not in CLASSIFIERS:
            logger.warning(f"Rule set {record.id} uses unknown classifier '{record.classifier}', falling back to profile_field")
            record = record.model_copy(update={"classifier": "profile_field", "classifier_config": ClassifierConfig()})
        self.record = record
        self._store = store
        self._source = source
        self._classifier: Classifier = get_classifier(record.classifier, record.classifier_config, source)
        self.preserve_manual = preserve_manual
        self.hooks: list[MembershipMovedHook] = list(hooks)
        self.groups: dict[int, AutoGroup] = {}
        if self.exists():
            self._load_groups()
        self._roles = self._retrieve_roles(default_roles)

    @classmethod
    def new(cls, store: Store, source: AttributeSource, scope_id: int = 0, **kwargs) -> RuleSet:  # noqa: ANN003
        rule_set = cls(RuleSetRecord(scope_id=0), store, source, **kwargs)
        rule_set.set_scope(scope_id)
        return rule_set

    @classmethod
    def load(cls, store: Store, source: AttributeSource, rule_set_id: int, **kwargs) -> RuleSet:  # noqa: ANN003
        if not isinstance(rule_set_id, int) or rule_set_id <= 0:
            raise InvalidRuleSetReference(f"Invalid rule set id: {rule_set_id!r}")
        record = store.get_rule_set(rule_set_id)
        if record is None:
            raise InvalidRuleSetReference(f"Rule set {rule_set_id} does not exist")
        return cls(record, store, source, **kwargs)

    @classmethod
    def for_scope(cls, store: Store, source: AttributeSource, scope_id: int, **kwargs) -> list[RuleSet]:  # noqa: ANN003
        rule_sets = []
        for record in store.rule_sets_for_scope(scope_id):
            try:
                rule_sets.append(cls(record, store, source, **kwargs))
            except InvalidRuleSetReference as e:
                logger.warning(f"Skipping rule set in scope {scope_id}: {e}")
        return rule_sets

    @property
    def id(self) -> int:
        return self.record.id

    @property
    def scope_id(self) -> int:
        return self.record.scope_id

    @property
    def classifier(self) -> Classifier:
        return self._classifier

    @property
    def eligible_roles(self) -> frozenset[int]:
        return frozenset(self._roles)

    @property
    def group_count(self) -> int:
        return len(self.groups)

    def exists(self) -> bool:
        return self.record.id > 0

    def _load_groups(self) -> None:
        self.groups = {}
        for record in self._store.groups_with_label_prefix(self.scope_id, label_prefix(self.id)):
            self.groups[record.id] = AutoGroup(record, self._store)

    def _retrieve_roles(self, default_roles: Iterable[int]) -> set[int]:
        roles = self._store.get_eligible_roles(self.id) if self.exists() else set()
        if not roles and not self.exists():
            roles = set(default_roles)
        return roles

    # -----------------Reconciliation-----------------#

    def is_eligible(self, member_roles: Iterable[int]) -> bool:
        return not self._roles.isdisjoint(member_roles)

    def verify_member(self, member: Member, member_roles: Iterable[int]) -> bool:
        """Bring one member's memberships in this rule set's groups in line with its classification.

        Args:
            member: The member snapshot to classify.
            member_roles: Role ids the member holds in this rule set's scope.

        Returns:
            True if the pass completed without an unexpected inconsistency.
        """
        if not self.exists():
            logger.warning(f"Cannot verify member {member.id} against an unsaved rule set")
            return False

        values: list[str] = []
        if self.is_eligible(member_roles):
            values = self._classifier.classify(member)

        result = True
        valid_group_ids: list[int] = []
        target_group_id: Optional[int] = None

        for value in values:
            group, created = self.find_or_create(value)
            if group.id in valid_group_ids:
                continue
            valid_group_ids.append(group.id)
            group.ensure_member(member.id)
            if target_group_id is None or created:
                target_group_id = group.id

        vacated: list[AutoGroup] = []
        for group_id, group in list(self.groups.items()):
            if group_id in valid_group_ids:
                continue
            if group.ensure_not_member(member.id, preserve_manual=self.preserve_manual):
                vacated.append(group)
                if target_group_id is not None:
                    result &= self._notify_moved(member.id, group_id, target_group_id)

        for group in vacated:
            if group.verify_population():
                self.groups.pop(group.id, None)

        logger.debug(
            f"Verified member {member.id} in rule set {self.id}",
            extra={"member_id": member.id, "rule_set_id": self.id, "values": values, "valid_group_ids": valid_group_ids},
        )
        return result

    def _notify_moved(self, member_id: int, old_group_id: int, new_group_id: int) -> bool:
        ok = True
        for hook in self.hooks:
            try:
                hook(self.scope_id, member_id, old_group_id, new_group_id)
            except Exception as e:
                logger.exception(f"Membership moved hook failed for member {member_id}: {e}")
                ok = False
        return ok

    def find_or_create(self, value: str) -> tuple[AutoGroup, bool]:
        """Group for a classification value, created when missing.

        Returns:
            The group and whether this call created it.
        """
        label = build_label(self.id, value)
        name = display_name(value)

        for group in self.groups.values():
            if group.label == label:
                group.rename(name)
                return group, False

        group = AutoGroup.new(self._store, self.scope_id, label, name)
        try:
            group.create()
        except DuplicateGroupLabel:
            # Somebody else created it first, adopt their row.
            record = self._store.get_group_by_label(self.scope_id, label)
            if record is None:
                raise PersistenceFailure(f"Group '{label}' reported as duplicate but not found in scope {self.scope_id}")
            logger.info(f"Adopting concurrently created group '{label}'", extra={"group_id": record.id})
            group = AutoGroup(record, self._store)
            group.rename(name)
            self.groups[group.id] = group
            return group, False

        self.groups[group.id] = group
        return group, True

    # -----------------Administration-----------------#

    def set_scope(self, scope_id: int) -> None:
        if isinstance(scope_id, int) and scope_id > 0:
            self.record = self.record.model_copy(update={"scope_id": scope_id})

    def set_classifier(self, key: str = "profile_field") -> None:
        """Switch classification module. The previous module's options are dropped."""
        if key == self.record.classifier:
            return
        if key not in CLASSIFIERS:
            raise InvalidClassificationConfig(f"Unknown classifier '{key}'")
        self.record = self.record.model_copy(update={"classifier": key, "classifier_config": ClassifierConfig()})
        self._classifier = get_classifier(key, self.record.classifier_config, self._source)

    def set_options(self, config: ClassifierConfig) -> None:
        """Apply a classifier config.

        Raises:
            InvalidClassificationConfig: If the config does not validate against the classifier's options.
        """
        if not self._classifier.validate(config):
            raise InvalidClassificationConfig(
                f"Invalid options for {self.record.classifier}: field={config.field!r} delimiter={config.delimiter!r}"
            )
        self.record = self.record.model_copy(update={"classifier_config": config})
        self._classifier = get_classifier(self.record.classifier, config, self._source)

    def set_eligible_roles(self, roles: Iterable[int]) -> bool:
        """Replace the allow-list. Returns True if it changed."""
        new_roles = set(roles)
        changed = new_roles != self._roles
        self._roles = new_roles
        return changed

    def group_by_options(self) -> dict[str, str]:
        return self._classifier.options()

    def delimiter_options(self) -> dict[str, str]:
        return self._classifier.delimiter_options()

    def grouping_by(self) -> Optional[str]:
        return self._classifier.grouping_by()

    def grouping_by_text(self) -> Optional[str]:
        return self._classifier.describe_grouping()

    def delimited_by(self) -> Optional[str]:
        return self._classifier.delimited_by()

    def membership_counts(self) -> dict[int, int]:
        return {group_id: group.membership_count() for group_id, group in self.groups.items()}

    def create(self) -> None:
        self.save()

    def save(self, cleanup_old: bool = True) -> None:
        """Persist the rule set and its eligible roles.

        Args:
            cleanup_old: When False, the groups built under the previous configuration are
                disassociated instead of being left for the engine to empty and delete.
        """
        if self.scope_id <= 0:
            raise InvalidRuleSetReference("Rule set has no scope")
        timestamp = now()
        updates = {"modified_at": timestamp, "classifier_config": self._classifier.config}
        if not self.exists():
            updates["created_at"] = timestamp
        self.record = self._store.save_rule_set(self.record.model_copy(update=updates))
        self._save_roles()
        logger.info(
            f"Saved rule set {self.id}",
            extra={
                "operation": "save_rule_set",
                "rule_set_id": self.id,
                "scope_id": self.scope_id,
                "classifier": self.record.classifier,
                "eligible_roles": self.eligible_roles,
            },
        )

        if not cleanup_old:
            self.disassociate_groups()

    def _save_roles(self) -> bool:
        stored = self._store.get_eligible_roles(self.id)
        to_add = self._roles - stored
        to_remove = stored - self._roles
        if to_remove:
            self._store.remove_eligible_roles(self.id, to_remove)
        if to_add:
            self._store.add_eligible_roles(self.id, to_add)
        changed = bool(to_add or to_remove)
        if changed:
            self._roles = self._store.get_eligible_roles(self.id)
        return changed

    def delete(self, cleanup_groups: bool = True) -> bool:
        """Delete the rule set.

        Args:
            cleanup_groups: Remove the managed groups when True, otherwise keep them as
                ordinary groups with their label cleared.

        Returns:
            False if the rule set was never persisted.
        """
        if not self.exists():
            return False

        # The record goes first so the groups are already orphaned while they are torn down.
        self._store.delete_rule_set(self.id)
        for group_id in self.groups:
            self._store.delete_manual_assignments_for_group(group_id)

        if cleanup_groups:
            for group in self.groups.values():
                group.remove()
            self.groups = {}
        else:
            self.disassociate_groups()

        logger.info(
            f"Deleted rule set {self.id}",
            extra={"operation": "delete_rule_set", "rule_set_id": self.id, "cleanup_groups": cleanup_groups},
        )
        return True

    def disassociate_groups(self) -> None:
        for group in self.groups.values():
            group.disassociate()
        self.groups = {}
