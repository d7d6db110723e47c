from datetime import datetime
from typing import Optional

from pydantic import Field

from .model import BaseModel


class Member(BaseModel):
    id: int
    attributes: dict[str, str] = Field(default_factory=dict)


class ClassifierConfig(BaseModel):
    field: Optional[str] = None
    delimiter: Optional[str] = None


class RuleSetRecord(BaseModel):
    id: int = 0
    scope_id: int
    classifier: str = "profile_field"
    classifier_config: ClassifierConfig = Field(default_factory=ClassifierConfig)
    created_at: Optional[datetime] = None
    modified_at: Optional[datetime] = None


class GroupRecord(BaseModel):
    id: int = 0
    scope_id: int
    label: str = ""
    name: str
    description: str = ""
    created_at: Optional[datetime] = None
    modified_at: Optional[datetime] = None


class ManualAssignment(BaseModel):
    member_id: int
    group_id: int
