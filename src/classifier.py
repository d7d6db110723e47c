"""Classification modules mapping a member's attributes to group keys.

A classifier is configured with a `ClassifierConfig` (which field to group by and, for the
multi-value variant, which delimiter splits the stored value). A classifier with an invalid
or missing config classifies nothing: the member is eligible for no group under that rule set.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Optional

from config import get_logger
from entities import ClassifierConfig, Member
from errors import InvalidClassificationConfig

if TYPE_CHECKING:
    from directory import AttributeSource

logger = get_logger(service="classifier")

DELIMITERS = (",", "|", ";")


def _ucfirst(value: str) -> str:
    """Upper-case the first character, leave the rest untouched."""
    return value[:1].upper() + value[1:]


class Classifier(ABC):
    """Base class for classification modules."""

    key: str = ""

    def __init__(self, config: ClassifierConfig, source: AttributeSource) -> None:
        self._source = source
        self._field: Optional[str] = None
        if self.validate(config):
            self._field = config.field
        elif config.field is not None:
            logger.warning(
                f"Ignoring invalid {self.key} config, nothing will be classified",
                extra={"classifier": self.key, "config": config},
            )

    @property
    def config(self) -> ClassifierConfig:
        return ClassifierConfig(field=self._field)

    @abstractmethod
    def options(self) -> dict[str, str]:
        """Valid `field` choices mapped to their display names."""

    def validate(self, config: ClassifierConfig) -> bool:
        if config.field is None:
            return False
        return config.field in self.options()

    @abstractmethod
    def classify(self, member: Member) -> list[str]:
        """Ordered classification values for a member."""

    def grouping_by(self) -> Optional[str]:
        return self._field or None

    def describe_grouping(self) -> Optional[str]:
        if not self._field:
            return None
        return self.options().get(self._field, self._field)

    def delimited_by(self) -> Optional[str]:
        return None

    def delimiter_options(self) -> dict[str, str]:
        return {}


class ProfileFieldClassifier(Classifier):
    """Groups by one of a fixed set of built-in profile attributes."""

    key = "profile_field"

    OPTIONS = {
        "auth": "Authentication method",
        "department": "Department",
        "institution": "Institution",
        "lang": "Preferred language",
        "city": "City/town",
    }

    def options(self) -> dict[str, str]:
        return dict(self.OPTIONS)

    def classify(self, member: Member) -> list[str]:
        if not self._field:
            return []
        value = member.attributes.get(self._field)
        if not value:
            return []
        return [value]


class UserInfoFieldClassifier(Classifier):
    """Groups by a custom profile field defined by the hosting system."""

    key = "user_info_field"

    def options(self) -> dict[str, str]:
        return self._source.custom_fields()

    def _raw_value(self, member: Member) -> Optional[str]:
        if not self._field:
            return None
        return self._source.custom_field_value(member.id, self._field)

    def classify(self, member: Member) -> list[str]:
        value = self._raw_value(member)
        if not value:
            return []
        return [value]

    def grouping_by(self) -> Optional[str]:
        if not self._field:
            return None
        return self._source.custom_fields().get(self._field) or None

    def describe_grouping(self) -> Optional[str]:
        name = self.grouping_by()
        return _ucfirst(name) if name else None


class MultiValueFieldClassifier(UserInfoFieldClassifier):
    """Splits a delimited text custom field into several classification values."""

    key = "user_info_field_multivalue"

    DELIMITER_NAMES = {
        ",": "Comma (,)",
        "|": "Pipe (|)",
        ";": "Semicolon (;)",
    }

    def __init__(self, config: ClassifierConfig, source: AttributeSource) -> None:
        super().__init__(config, source)
        self._delimiter: Optional[str] = config.delimiter if self._field else None

    @property
    def config(self) -> ClassifierConfig:
        return ClassifierConfig(field=self._field, delimiter=self._delimiter)

    def options(self) -> dict[str, str]:
        return self._source.custom_fields(datatype="text")

    def validate(self, config: ClassifierConfig) -> bool:
        return super().validate(config) and config.delimiter in DELIMITERS

    def classify(self, member: Member) -> list[str]:
        value = self._raw_value(member)
        if not value or not self._delimiter:
            return []
        values = [part.strip() for part in value.split(self._delimiter)]
        return [v for v in values if v]

    def grouping_by(self) -> Optional[str]:
        return self._field or None

    def describe_grouping(self) -> Optional[str]:
        if not self._field:
            return None
        return self._source.custom_fields().get(self._field) or None

    def delimited_by(self) -> Optional[str]:
        return self._delimiter

    def delimiter_options(self) -> dict[str, str]:
        return dict(self.DELIMITER_NAMES)


CLASSIFIERS: dict[str, type[Classifier]] = {
    ProfileFieldClassifier.key: ProfileFieldClassifier,
    UserInfoFieldClassifier.key: UserInfoFieldClassifier,
    MultiValueFieldClassifier.key: MultiValueFieldClassifier,
}


def get_classifier(key: str, config: ClassifierConfig, source: AttributeSource) -> Classifier:
    """Build a classifier from the registry.

    Raises:
        InvalidClassificationConfig: If no classifier is registered under key.
    """
    classifier_cls = CLASSIFIERS.get(key)
    if classifier_cls is None:
        raise InvalidClassificationConfig(f"Unknown classifier '{key}'")
    return classifier_cls(config, source)


def list_classifiers() -> dict[str, str]:
    """Registered classifier keys mapped to human-readable names."""
    return {key: _ucfirst(key.replace("_", " ")) for key in CLASSIFIERS}
