from . import model, records
from .model import BaseModel, json_default
from .records import ClassifierConfig, GroupRecord, ManualAssignment, Member, RuleSetRecord

__all__ = [
    "model",
    "records",
    "BaseModel",
    "json_default",
    "ClassifierConfig",
    "GroupRecord",
    "ManualAssignment",
    "Member",
    "RuleSetRecord",
]
