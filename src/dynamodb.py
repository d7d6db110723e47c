"""DynamoDB implementations of the store and the directory.

The store is a single table keyed by a string `pk`:

- `ruleset#<id>`: rule set record, eligible roles in the number set `roles`
- `group#<id>`: group record, member ids in `members`, manually assigned member ids in `manual`
- `label#<scope_id>#<label>`: uniqueness lock for a group label, written with a conditional put
- `counter#<kind>`: id sequence

Every item carries a `kind` attribute so scans can filter by record type.
"""

from __future__ import annotations

import functools
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Iterator, Literal, Optional

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError

import config
from entities import ClassifierConfig, GroupRecord, Member, RuleSetRecord
from errors import DuplicateGroupLabel, PersistenceFailure
from store import now

if TYPE_CHECKING:
    from mypy_boto3_dynamodb.service_resource import Table

logger = config.get_logger(service="dynamodb")


def _is_conditional_failure(e: ClientError) -> bool:
    return e.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


def wrap_client_errors(fn):  # noqa: ANN001, ANN201
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):  # noqa: ANN002, ANN003, ANN202
        try:
            return fn(*args, **kwargs)
        except ClientError as e:
            logger.exception(f"DynamoDB call {fn.__name__} failed: {e}")
            raise PersistenceFailure(f"{fn.__name__} failed: {e}") from e

    return wrapper


def _int_set(value: Optional[set]) -> set[int]:
    return {int(v) for v in value or ()}


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def set_clause(fields: dict[str, Any]) -> tuple[str, dict[str, str], dict[str, Any]]:
    """UpdateExpression SET clause with every attribute name behind a placeholder."""
    expression = "SET " + ", ".join(f"#{name} = :{name}" for name in fields)
    names = {f"#{name}": name for name in fields}
    values = {f":{name}": value for name, value in fields.items()}
    return expression, names, values


def scan_all(table: Table, **kwargs) -> Iterator[dict[str, Any]]:  # noqa: ANN003
    while True:
        response = table.scan(**kwargs)
        yield from response.get("Items", [])
        last_key = response.get("LastEvaluatedKey")
        if not last_key:
            return
        kwargs["ExclusiveStartKey"] = last_key


class DynamoDBStore:
    def __init__(self, table: Table) -> None:
        self.table = table

    @classmethod
    def from_config(cls, cfg: config.Config) -> DynamoDBStore:
        return cls(boto3.resource("dynamodb").Table(cfg.table_name))

    def _next_id(self, kind: str) -> int:
        response = self.table.update_item(
            Key={"pk": f"counter#{kind}"},
            UpdateExpression="ADD #next_id :one SET #kind = :kind",
            ExpressionAttributeNames={"#next_id": "next_id", "#kind": "kind"},
            ExpressionAttributeValues={":one": 1, ":kind": "counter"},
            ReturnValues="UPDATED_NEW",
        )
        return int(response["Attributes"]["next_id"])

    # -----------------Rule sets-----------------#

    @staticmethod
    def _to_rule_set(item: dict[str, Any]) -> RuleSetRecord:
        return RuleSetRecord(
            id=int(item["id"]),
            scope_id=int(item["scope_id"]),
            classifier=item["classifier"],
            classifier_config=ClassifierConfig(field=item.get("field"), delimiter=item.get("delimiter")),
            created_at=_dt(item.get("created_at")),
            modified_at=_dt(item.get("modified_at")),
        )

    @wrap_client_errors
    def get_rule_set(self, rule_set_id: int) -> Optional[RuleSetRecord]:
        item = self.table.get_item(Key={"pk": f"ruleset#{rule_set_id}"}).get("Item")
        return self._to_rule_set(item) if item else None

    @wrap_client_errors
    def rule_sets_for_scope(self, scope_id: int) -> list[RuleSetRecord]:
        items = scan_all(self.table, FilterExpression=Attr("kind").eq("ruleset") & Attr("scope_id").eq(scope_id))
        return sorted((self._to_rule_set(item) for item in items), key=lambda r: r.id)

    @wrap_client_errors
    def scope_ids_with_rule_sets(self) -> set[int]:
        return {int(item["scope_id"]) for item in scan_all(self.table, FilterExpression=Attr("kind").eq("ruleset"))}

    @wrap_client_errors
    def save_rule_set(self, record: RuleSetRecord) -> RuleSetRecord:
        if record.id == 0:
            record = record.model_copy(update={"id": self._next_id("ruleset")})
        # update_item keeps the roles set untouched
        expression, names, values = set_clause(
            {
                "kind": "ruleset",
                "id": record.id,
                "scope_id": record.scope_id,
                "classifier": record.classifier,
                "field": record.classifier_config.field,
                "delimiter": record.classifier_config.delimiter,
                "created_at": _iso(record.created_at),
                "modified_at": _iso(record.modified_at),
            }
        )
        self.table.update_item(
            Key={"pk": f"ruleset#{record.id}"},
            UpdateExpression=expression,
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=values,
        )
        return record

    @wrap_client_errors
    def delete_rule_set(self, rule_set_id: int) -> bool:
        response = self.table.delete_item(Key={"pk": f"ruleset#{rule_set_id}"}, ReturnValues="ALL_OLD")
        return bool(response.get("Attributes"))

    # -----------------Eligible roles-----------------#

    @wrap_client_errors
    def get_eligible_roles(self, rule_set_id: int) -> set[int]:
        item = self.table.get_item(Key={"pk": f"ruleset#{rule_set_id}"}).get("Item") or {}
        return _int_set(item.get("roles"))

    @wrap_client_errors
    def add_eligible_roles(self, rule_set_id: int, role_ids: set[int]) -> None:
        if not role_ids:
            return
        self.table.update_item(
            Key={"pk": f"ruleset#{rule_set_id}"},
            UpdateExpression="ADD #roles :roles",
            ExpressionAttributeNames={"#roles": "roles"},
            ExpressionAttributeValues={":roles": set(role_ids)},
        )

    @wrap_client_errors
    def remove_eligible_roles(self, rule_set_id: int, role_ids: set[int]) -> None:
        if not role_ids:
            return
        self.table.update_item(
            Key={"pk": f"ruleset#{rule_set_id}"},
            UpdateExpression="DELETE #roles :roles",
            ExpressionAttributeNames={"#roles": "roles"},
            ExpressionAttributeValues={":roles": set(role_ids)},
        )

    @wrap_client_errors
    def delete_role_references(self, role_id: int) -> int:
        items = list(scan_all(self.table, FilterExpression=Attr("kind").eq("ruleset") & Attr("roles").contains(role_id)))
        for item in items:
            self.remove_eligible_roles(int(item["id"]), {role_id})
        return len(items)

    # -----------------Groups-----------------#

    @staticmethod
    def _to_group(item: dict[str, Any]) -> GroupRecord:
        return GroupRecord(
            id=int(item["id"]),
            scope_id=int(item["scope_id"]),
            label=item.get("label", ""),
            name=item["name"],
            description=item.get("description", ""),
            created_at=_dt(item.get("created_at")),
            modified_at=_dt(item.get("modified_at")),
        )

    @staticmethod
    def _label_key(scope_id: int, label: str) -> dict[str, str]:
        return {"pk": f"label#{scope_id}#{label}"}

    def _lock_label(self, scope_id: int, label: str, group_id: int) -> None:
        try:
            self.table.put_item(
                Item=self._label_key(scope_id, label) | {"kind": "label", "group_id": group_id},
                ConditionExpression=Attr("pk").not_exists(),
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                raise DuplicateGroupLabel(scope_id, label) from e
            raise

    def _put_group(self, record: GroupRecord, component: str, condition: Optional[Any] = None) -> bool:
        """Write the group item. Returns False when `condition` does not hold."""
        expression, names, values = set_clause(
            {
                "kind": "group",
                "id": record.id,
                "scope_id": record.scope_id,
                "label": record.label,
                "name": record.name,
                "description": record.description,
                "created_at": _iso(record.created_at),
                "modified_at": _iso(record.modified_at),
                "modified_by": component,
            }
        )
        kwargs: dict[str, Any] = {}
        if condition is not None:
            kwargs["ConditionExpression"] = condition
        try:
            self.table.update_item(
                Key={"pk": f"group#{record.id}"},
                UpdateExpression=expression,
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
                **kwargs,
            )
        except ClientError as e:
            if condition is not None and _is_conditional_failure(e):
                return False
            raise
        return True

    def _restore_locked_group(self, record: GroupRecord, component: str) -> None:
        """Write the group a label lock points at when its item is missing.

        The lock and the group item are separate writes, so a creator that died between them,
        or one still in flight, leaves a lock without a group.
        """
        lock = self.table.get_item(Key=self._label_key(record.scope_id, record.label)).get("Item")
        if not lock:
            return
        group_id = int(lock["group_id"])
        if self.table.get_item(Key={"pk": f"group#{group_id}"}).get("Item"):
            return
        restored = self._put_group(record.model_copy(update={"id": group_id}), component, condition=Attr("pk").not_exists())
        if restored:
            logger.warning(
                f"Restored group {group_id} behind label lock",
                extra={"operation": "restore_locked_group", "label": record.label, "scope_id": record.scope_id},
            )

    @wrap_client_errors
    def get_group(self, group_id: int) -> Optional[GroupRecord]:
        item = self.table.get_item(Key={"pk": f"group#{group_id}"}).get("Item")
        return self._to_group(item) if item else None

    @wrap_client_errors
    def get_group_by_label(self, scope_id: int, label: str) -> Optional[GroupRecord]:
        lock = self.table.get_item(Key=self._label_key(scope_id, label)).get("Item")
        if not lock:
            return None
        return self.get_group(int(lock["group_id"]))

    @wrap_client_errors
    def groups_with_label_prefix(self, scope_id: int, prefix: str) -> list[GroupRecord]:
        condition = Attr("kind").eq("group") & Attr("scope_id").eq(scope_id)
        if prefix:
            condition &= Attr("label").begins_with(prefix)
        return sorted((self._to_group(item) for item in scan_all(self.table, FilterExpression=condition)), key=lambda g: g.id)

    @wrap_client_errors
    def create_group(self, record: GroupRecord, component: str) -> GroupRecord:
        record = record.model_copy(update={"id": self._next_id("group"), "created_at": now()})
        if record.label:
            try:
                self._lock_label(record.scope_id, record.label, record.id)
            except DuplicateGroupLabel:
                self._restore_locked_group(record, component)
                raise
        self._put_group(record, component)
        logger.debug(f"Created group {record.id}", extra={"label": record.label, "component": component})
        return record

    @wrap_client_errors
    def update_group(self, record: GroupRecord, component: str) -> Optional[GroupRecord]:
        current = self.get_group(record.id)
        if current is None:
            return None
        record = record.model_copy(update={"modified_at": now()})
        relabelled = current.label != record.label
        if relabelled and record.label:
            self._lock_label(record.scope_id, record.label, record.id)
        if not self._put_group(record, component, condition=Attr("pk").exists()):
            # Deleted since it was read
            if relabelled and record.label:
                self.table.delete_item(Key=self._label_key(record.scope_id, record.label))
            return None
        if relabelled and current.label:
            self.table.delete_item(Key=self._label_key(current.scope_id, current.label))
        return record

    @wrap_client_errors
    def delete_group(self, group_id: int, component: str) -> bool:
        response = self.table.delete_item(Key={"pk": f"group#{group_id}"}, ReturnValues="ALL_OLD")
        old = response.get("Attributes")
        if not old:
            return False
        if old.get("label"):
            self.table.delete_item(Key=self._label_key(int(old["scope_id"]), old["label"]))
        logger.debug(f"Deleted group {group_id}", extra={"component": component})
        return True

    # -----------------Memberships and manual assignments-----------------#

    def _update_set(  # noqa: PLR0913
        self,
        group_id: int,
        action: Literal["ADD", "DELETE"],
        attribute: str,
        member_id: int,
        component: Optional[str] = None,
    ) -> bool:
        """Add or delete one member id in a number set of a group item.

        Returns:
            False when the write would not change anything (or the group is gone).
        """
        update = f"{action} #set :member"
        names = {"#set": attribute}
        values: dict[str, Any] = {":member": {member_id}, ":member_id": member_id}
        if component is not None:
            update += " SET #modified_by = :component"
            names["#modified_by"] = "modified_by"
            values[":component"] = component
        if action == "ADD":
            condition = "attribute_exists(pk) AND NOT contains(#set, :member_id)"
        else:
            condition = "contains(#set, :member_id)"
        try:
            self.table.update_item(
                Key={"pk": f"group#{group_id}"},
                UpdateExpression=update,
                ConditionExpression=condition,
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                return False
            raise
        return True

    @wrap_client_errors
    def group_member_ids(self, group_id: int) -> set[int]:
        item = self.table.get_item(Key={"pk": f"group#{group_id}"}).get("Item") or {}
        return _int_set(item.get("members"))

    @wrap_client_errors
    def member_group_ids(self, member_id: int, label_prefix: str = "") -> set[int]:
        condition = Attr("kind").eq("group") & Attr("members").contains(member_id)
        if label_prefix:
            condition &= Attr("label").begins_with(label_prefix)
        return {int(item["id"]) for item in scan_all(self.table, FilterExpression=condition)}

    @wrap_client_errors
    def add_member(self, group_id: int, member_id: int, component: str) -> bool:
        return self._update_set(group_id, "ADD", "members", member_id, component)

    @wrap_client_errors
    def remove_member(self, group_id: int, member_id: int, component: str) -> bool:
        return self._update_set(group_id, "DELETE", "members", member_id, component)

    @wrap_client_errors
    def manual_assignment_exists(self, member_id: int, group_id: int) -> bool:
        item = self.table.get_item(Key={"pk": f"group#{group_id}"}).get("Item") or {}
        return member_id in _int_set(item.get("manual"))

    @wrap_client_errors
    def add_manual_assignment(self, member_id: int, group_id: int) -> bool:
        return self._update_set(group_id, "ADD", "manual", member_id)

    @wrap_client_errors
    def delete_manual_assignment(self, member_id: int, group_id: int) -> bool:
        return self._update_set(group_id, "DELETE", "manual", member_id)

    @wrap_client_errors
    def delete_manual_assignments_for_group(self, group_id: int) -> int:
        try:
            response = self.table.update_item(
                Key={"pk": f"group#{group_id}"},
                UpdateExpression="REMOVE #manual",
                ConditionExpression="attribute_exists(#manual)",
                ExpressionAttributeNames={"#manual": "manual"},
                ReturnValues="UPDATED_OLD",
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                return 0
            raise
        return len(response.get("Attributes", {}).get("manual", ()))


class DynamoDBDirectory:
    """Directory backed by a members table.

    - `member#<id>`: `attributes` map, `custom` map of field id to value, `roles` map of scope id to role id list
    - `field#<id>`: custom profile field with `name` and `datatype`
    """

    def __init__(self, table: Table) -> None:
        self.table = table

    @classmethod
    def from_config(cls, cfg: config.Config) -> DynamoDBDirectory:
        return cls(boto3.resource("dynamodb").Table(cfg.members_table_name))

    def _member_item(self, member_id: int) -> Optional[dict[str, Any]]:
        return self.table.get_item(Key={"pk": f"member#{member_id}"}).get("Item")

    @wrap_client_errors
    def get_member(self, member_id: int) -> Optional[Member]:
        item = self._member_item(member_id)
        if not item:
            return None
        return Member(id=int(item["id"]), attributes={k: str(v) for k, v in item.get("attributes", {}).items()})

    @wrap_client_errors
    def scope_member_ids(self, scope_id: int) -> list[int]:
        condition = Attr("kind").eq("member") & Attr(f"roles.{scope_id}").exists()
        return sorted(int(item["id"]) for item in scan_all(self.table, FilterExpression=condition))

    @wrap_client_errors
    def member_scope_ids(self, member_id: int) -> set[int]:
        item = self._member_item(member_id) or {}
        return {int(scope_id) for scope_id in item.get("roles", {})}

    @wrap_client_errors
    def member_roles(self, scope_id: int, member_id: int) -> set[int]:
        item = self._member_item(member_id) or {}
        return _int_set(item.get("roles", {}).get(str(scope_id)))

    @wrap_client_errors
    def custom_fields(self, datatype: Optional[str] = None) -> dict[str, str]:
        condition = Attr("kind").eq("field")
        if datatype is not None:
            condition &= Attr("datatype").eq(datatype)
        return {item["field_id"]: item["name"] for item in scan_all(self.table, FilterExpression=condition)}

    @wrap_client_errors
    def custom_field_value(self, member_id: int, field_id: str) -> Optional[str]:
        item = self._member_item(member_id) or {}
        value = item.get("custom", {}).get(field_id)
        if value is None:
            return None
        return str(value) if not isinstance(value, Decimal) else str(int(value))
