import os
from typing import Optional

from aws_lambda_powertools import Logger
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

import entities

# Every mutation performed by the engine is tagged with this component name.
AUTOGROUP_COMPONENT = "autogroup"


def get_logger(service: Optional[str] = None, level: Optional[str] = None) -> Logger:
    kwargs = {
        "json_default": entities.json_default,
        "level": level or os.environ.get("LOG_LEVEL", "INFO"),
    }
    if service:
        kwargs["service"] = service
    return Logger(**kwargs)


logger = get_logger(service="config")


class Config(BaseSettings):
    model_config = SettingsConfigDict(frozen=True)

    enabled: bool = True

    listen_for_role_changes: bool = True
    listen_for_group_membership: bool = True
    listen_for_profile_changes: bool = True
    listen_for_group_changes: bool = True

    add_to_new_scopes: bool = False
    add_to_restored_scopes: bool = False

    preserve_manual_assignments: bool = True

    default_classifier: str = "profile_field"
    default_classifier_field: str = "department"
    default_eligible_roles: frozenset[int] = frozenset()

    log_level: str = "INFO"

    table_name: str = "autogroup"
    members_table_name: str = "autogroup-members"

    @field_validator("default_classifier")
    @classmethod
    def check_default_classifier(cls, value: str) -> str:
        from classifier import CLASSIFIERS

        if value not in CLASSIFIERS:
            raise ValueError(f"Unknown classifier '{value}', expected one of {sorted(CLASSIFIERS)}")
        return value

    def without_role(self, role_id: int) -> "Config":
        """Copy of this config with role_id dropped from the default eligible roles."""
        if role_id not in self.default_eligible_roles:
            return self
        logger.info(f"Dropping deleted role {role_id} from default eligible roles")
        return self.model_copy(update={"default_eligible_roles": self.default_eligible_roles - {role_id}})


_config: Optional[Config] = None


def get_config() -> Config:
    global _config  # noqa: PLW0603
    if _config is None:
        _config = Config()  # type: ignore # noqa: PGH003
    return _config
