from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock, patch

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from directory import InMemoryDirectory
from entities import ClassifierConfig, Member
from errors import InvalidClassificationConfig, InvalidRuleSetReference
from group import build_label
from rule_set import RuleSet
from store import InMemoryStore

from . import strategies
from .conftest import INSTRUCTOR, STUDENT


def make_rule_set(
    store: InMemoryStore,
    directory: InMemoryDirectory,
    classifier: str = "profile_field",
    config: ClassifierConfig = ClassifierConfig(field="department"),  # noqa: B008
    roles: frozenset[int] = frozenset({STUDENT}),
    **kwargs,
) -> RuleSet:
    rule_set = RuleSet.new(store, directory, scope_id=10, **kwargs)
    rule_set.set_classifier(classifier)
    rule_set.set_options(config)
    rule_set.set_eligible_roles(roles)
    rule_set.save()
    return rule_set


def group_labels(store: InMemoryStore, member_id: int) -> set[str]:
    return {store.get_group(group_id).label for group_id in store.member_group_ids(member_id)}


def test_verify_member_creates_group_and_adds_member(store, directory):
    rule_set = make_rule_set(store, directory)
    member = directory.get_member(1)

    assert rule_set.verify_member(member, {STUDENT})

    group = store.get_group_by_label(10, build_label(rule_set.id, "engineering"))
    assert group is not None
    assert group.name == "Engineering"
    assert store.group_member_ids(group.id) == {1}


@given(st.lists(strategies.classification_value, min_size=1, max_size=4))
@settings(max_examples=100)
def test_verify_member_is_idempotent(values: list[str]):
    store = InMemoryStore()
    directory = InMemoryDirectory()
    directory.add_custom_field("interests", "interests")
    directory.set_custom_field_value(1, "interests", ",".join(values))
    rule_set = make_rule_set(
        store, directory, "user_info_field_multivalue", ClassifierConfig(field="interests", delimiter=",")
    )
    member = Member(id=1)

    assert rule_set.verify_member(member, {STUDENT})
    mutations = len(store.mutations)

    assert rule_set.verify_member(member, {STUDENT})
    assert len(store.mutations) == mutations

    expected = {build_label(rule_set.id, v) for v in values}
    assert group_labels(store, 1) == expected


def test_multivalue_member_lands_in_every_group(store, directory):
    directory.set_custom_field_value(1, "interests", "Engineering, Sales")
    rule_set = make_rule_set(
        store, directory, "user_info_field_multivalue", ClassifierConfig(field="interests", delimiter=",")
    )

    assert rule_set.verify_member(Member(id=1), {STUDENT})

    assert group_labels(store, 1) == {build_label(rule_set.id, "Engineering"), build_label(rule_set.id, "Sales")}
    assert rule_set.group_count == 2


def test_member_moves_when_value_changes(store, directory):
    rule_set = make_rule_set(store, directory)
    rule_set.verify_member(Member(id=1, attributes={"department": "engineering"}), {STUDENT})
    rule_set.verify_member(Member(id=2, attributes={"department": "engineering"}), {STUDENT})

    rule_set.verify_member(Member(id=1, attributes={"department": "sales"}), {STUDENT})

    assert group_labels(store, 1) == {build_label(rule_set.id, "sales")}
    assert group_labels(store, 2) == {build_label(rule_set.id, "engineering")}


def test_emptied_group_is_deleted(store, directory):
    rule_set = make_rule_set(store, directory)
    rule_set.verify_member(Member(id=1, attributes={"department": "engineering"}), {STUDENT})
    old_group = store.get_group_by_label(10, build_label(rule_set.id, "engineering"))

    rule_set.verify_member(Member(id=1, attributes={"department": "sales"}), {STUDENT})

    assert store.get_group(old_group.id) is None
    assert old_group.id not in rule_set.groups


def test_ineligible_member_is_never_classified(store, directory):
    rule_set = make_rule_set(store, directory)
    member = directory.get_member(1)
    rule_set.verify_member(member, {STUDENT})

    with patch.object(rule_set.classifier, "classify", wraps=rule_set.classifier.classify) as classify:
        assert rule_set.verify_member(member, {INSTRUCTOR})
        classify.assert_not_called()

    assert store.member_group_ids(1) == set()


def test_member_without_value_is_in_no_group(store, directory):
    rule_set = make_rule_set(store, directory)
    assert rule_set.verify_member(directory.get_member(3), {STUDENT})
    assert store.member_group_ids(3) == set()
    assert rule_set.group_count == 0


def test_manual_assignment_is_preserved(store, directory):
    rule_set = make_rule_set(store, directory)
    rule_set.verify_member(Member(id=1, attributes={"department": "engineering"}), {STUDENT})
    rule_set.verify_member(Member(id=2, attributes={"department": "sales"}), {STUDENT})
    sales = store.get_group_by_label(10, build_label(rule_set.id, "sales"))
    store.add_member(sales.id, 1, component="manual")
    store.add_manual_assignment(1, sales.id)

    reloaded = RuleSet.load(store, directory, rule_set.id)
    reloaded.verify_member(Member(id=1, attributes={"department": "engineering"}), {STUDENT})

    assert sales.id in store.member_group_ids(1)


def test_manual_assignment_removed_when_not_preserved(store, directory):
    rule_set = make_rule_set(store, directory, preserve_manual=False)
    rule_set.verify_member(Member(id=1, attributes={"department": "engineering"}), {STUDENT})
    rule_set.verify_member(Member(id=2, attributes={"department": "sales"}), {STUDENT})
    sales = store.get_group_by_label(10, build_label(rule_set.id, "sales"))
    store.add_member(sales.id, 1, component="manual")
    store.add_manual_assignment(1, sales.id)

    reloaded = RuleSet.load(store, directory, rule_set.id, preserve_manual=False)
    reloaded.verify_member(Member(id=1, attributes={"department": "engineering"}), {STUDENT})

    assert sales.id not in store.member_group_ids(1)


def test_moved_hook_called_with_new_group(store, directory):
    hook = MagicMock()
    rule_set = make_rule_set(store, directory, hooks=[hook])
    rule_set.verify_member(Member(id=1, attributes={"department": "engineering"}), {STUDENT})
    rule_set.verify_member(Member(id=2, attributes={"department": "engineering"}), {STUDENT})
    old = store.get_group_by_label(10, build_label(rule_set.id, "engineering"))

    rule_set.verify_member(Member(id=1, attributes={"department": "sales"}), {STUDENT})
    new = store.get_group_by_label(10, build_label(rule_set.id, "sales"))

    hook.assert_called_once_with(10, 1, old.id, new.id)


def test_failing_hook_does_not_abort_pass(store, directory):
    hook = MagicMock(side_effect=RuntimeError("boom"))
    rule_set = make_rule_set(store, directory, hooks=[hook])
    rule_set.verify_member(Member(id=1, attributes={"department": "engineering"}), {STUDENT})
    rule_set.verify_member(Member(id=2, attributes={"department": "engineering"}), {STUDENT})

    assert not rule_set.verify_member(Member(id=1, attributes={"department": "sales"}), {STUDENT})
    assert group_labels(store, 1) == {build_label(rule_set.id, "sales")}


def test_concurrent_find_or_create_yields_one_group(directory):
    store = InMemoryStore()
    rule_set = make_rule_set(store, directory)
    passes = [RuleSet.load(store, directory, rule_set.id) for _ in range(8)]

    with ThreadPoolExecutor(max_workers=8) as executor:
        results = list(
            executor.map(
                lambda args: args[0].verify_member(Member(id=args[1], attributes={"department": "sales"}), {STUDENT}),
                zip(passes, range(1, 9)),
            )
        )

    assert all(results)
    groups = store.groups_with_label_prefix(10, build_label(rule_set.id, "sales"))
    assert len(groups) == 1
    assert store.group_member_ids(groups[0].id) == set(range(1, 9))


def test_find_or_create_adopts_existing_group(store, directory):
    rule_set = make_rule_set(store, directory)
    stale = RuleSet.load(store, directory, rule_set.id)
    group, created = rule_set.find_or_create("sales")

    adopted, adopted_created = stale.find_or_create("sales")

    assert created
    assert not adopted_created
    assert adopted.id == group.id


def test_find_or_create_restores_display_name(store, directory):
    rule_set = make_rule_set(store, directory)
    group, _ = rule_set.find_or_create("sales")
    store.update_group(store.get_group(group.id).model_copy(update={"name": "Renamed"}), component="manual")

    found, created = RuleSet.load(store, directory, rule_set.id).find_or_create("sales")

    assert not created
    assert found.id == group.id
    assert store.get_group(group.id).name == "Sales"


def test_unsaved_rule_set_does_not_verify(store, directory):
    rule_set = RuleSet.new(store, directory, scope_id=10)
    assert not rule_set.verify_member(directory.get_member(1), {STUDENT})


def test_load_rejects_bad_ids(store, directory):
    with pytest.raises(InvalidRuleSetReference):
        RuleSet.load(store, directory, 0)
    with pytest.raises(InvalidRuleSetReference):
        RuleSet.load(store, directory, 42)


def test_save_requires_scope(store, directory):
    with pytest.raises(InvalidRuleSetReference):
        RuleSet.new(store, directory).save()


def test_set_options_rejects_invalid_config(store, directory):
    rule_set = RuleSet.new(store, directory, scope_id=10)
    with pytest.raises(InvalidClassificationConfig):
        rule_set.set_options(ClassifierConfig(field="password"))
    rule_set.set_classifier("user_info_field_multivalue")
    with pytest.raises(InvalidClassificationConfig):
        rule_set.set_options(ClassifierConfig(field="interests", delimiter="/"))


def test_set_classifier_rejects_unknown_key(store, directory):
    with pytest.raises(InvalidClassificationConfig):
        RuleSet.new(store, directory, scope_id=10).set_classifier("nope")


def test_set_classifier_drops_previous_options(store, directory):
    rule_set = make_rule_set(store, directory)
    rule_set.set_classifier("user_info_field")
    assert rule_set.grouping_by() is None
    assert rule_set.group_by_options() == {"interests": "interests", "birthday": "birthday"}


def test_eligible_roles_are_persisted(store, directory):
    rule_set = make_rule_set(store, directory, roles=frozenset({STUDENT, INSTRUCTOR}))

    assert not rule_set.set_eligible_roles({STUDENT, INSTRUCTOR})
    assert rule_set.set_eligible_roles({INSTRUCTOR})
    rule_set.save()

    assert store.get_eligible_roles(rule_set.id) == {INSTRUCTOR}
    assert RuleSet.load(store, directory, rule_set.id).eligible_roles == frozenset({INSTRUCTOR})


def test_default_roles_only_for_new_rule_sets(store, directory):
    assert RuleSet.new(store, directory, scope_id=10, default_roles={STUDENT}).eligible_roles == frozenset({STUDENT})

    rule_set = make_rule_set(store, directory, roles=frozenset())
    assert RuleSet.load(store, directory, rule_set.id, default_roles={STUDENT}).eligible_roles == frozenset()


def test_unknown_stored_classifier_falls_back(store, directory):
    rule_set = make_rule_set(store, directory)
    store.rule_sets[rule_set.id] = rule_set.record.model_copy(update={"classifier": "gone"})

    reloaded = RuleSet.load(store, directory, rule_set.id)
    assert reloaded.record.classifier == "profile_field"
    assert reloaded.verify_member(directory.get_member(1), {STUDENT})
    assert store.member_group_ids(1) == set()


def test_save_without_cleanup_disassociates_groups(store, directory):
    rule_set = make_rule_set(store, directory)
    rule_set.verify_member(directory.get_member(1), {STUDENT})
    group_id = next(iter(rule_set.groups))

    rule_set.set_options(ClassifierConfig(field="city"))
    rule_set.save(cleanup_old=False)

    assert store.get_group(group_id).label == ""
    assert store.group_member_ids(group_id) == {1}
    assert rule_set.group_count == 0


def test_delete_with_cleanup_removes_groups(store, directory):
    rule_set = make_rule_set(store, directory)
    rule_set.verify_member(directory.get_member(1), {STUDENT})
    group_id = next(iter(rule_set.groups))
    store.add_manual_assignment(1, group_id)

    assert rule_set.delete()

    assert store.get_rule_set(rule_set.id) is None
    assert store.get_eligible_roles(rule_set.id) == set()
    assert store.get_group(group_id) is None
    assert store.manual_assignments == set()


def test_delete_without_cleanup_keeps_members(store, directory):
    rule_set = make_rule_set(store, directory)
    rule_set.verify_member(directory.get_member(1), {STUDENT})
    rule_set.verify_member(directory.get_member(2), {STUDENT})
    group_ids = set(rule_set.groups)

    assert rule_set.delete(cleanup_groups=False)

    for group_id in group_ids:
        assert store.get_group(group_id).label == ""
    assert store.member_group_ids(1) | store.member_group_ids(2) == group_ids
    assert not RuleSet.new(store, directory, scope_id=10).delete()


def test_admin_views(store, directory):
    directory.set_custom_field_value(1, "interests", "a;b")
    rule_set = make_rule_set(
        store, directory, "user_info_field_multivalue", ClassifierConfig(field="interests", delimiter=";")
    )
    rule_set.verify_member(Member(id=1), {STUDENT})

    assert rule_set.grouping_by() == "interests"
    assert rule_set.grouping_by_text() == "interests"
    assert rule_set.delimited_by() == ";"
    assert set(rule_set.delimiter_options()) == {",", "|", ";"}
    assert sorted(rule_set.membership_counts().values()) == [1, 1]
