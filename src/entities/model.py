import dataclasses
import datetime
import enum

from pydantic import BaseModel as PydanticBaseModel
from pydantic import ConfigDict


def _convert_to_serializable(obj):  # noqa: ANN001, ANN202, PLR0911
    """Recursively convert records to JSON-serializable structures."""
    if isinstance(obj, PydanticBaseModel):
        return {field_name: _convert_to_serializable(getattr(obj, field_name)) for field_name in obj.__class__.model_fields}
    if isinstance(obj, (frozenset, set)):
        return sorted((_convert_to_serializable(item) for item in obj), key=str)
    if isinstance(obj, dict):
        return {str(key): _convert_to_serializable(value) for key, value in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_convert_to_serializable(item) for item in obj]
    if isinstance(obj, enum.Enum):
        return obj.value
    if isinstance(obj, datetime.datetime):
        return obj.isoformat()
    return obj


class BaseModel(PydanticBaseModel):
    model_config = ConfigDict(frozen=True)

    def dict(self, *args, **kwargs) -> dict:  # noqa: ANN101, ANN003, ANN002, ARG002
        """Plain dict view of the record, frozensets flattened to sorted lists."""
        return _convert_to_serializable(self)


def json_default(o: object) -> str | dict:
    if isinstance(o, PydanticBaseModel):
        return _convert_to_serializable(o)
    elif dataclasses.is_dataclass(o) and not isinstance(o, type):
        return dataclasses.asdict(o)
    elif isinstance(o, enum.Enum):
        return o.value
    elif isinstance(o, (set, frozenset)):
        return _convert_to_serializable(o)
    return str(o)
