import os

import boto3
import pytest

from directory import InMemoryDirectory
from entities import Member
from store import InMemoryStore

STUDENT = 5
INSTRUCTOR = 3


def pytest_sessionstart(session):  # noqa: ANN201, ARG001, ANN001
    mock_env = {
        "log_level": "DEBUG",
        "table_name": "autogroup-test",
        "members_table_name": "autogroup-members-test",
        "default_classifier": "profile_field",
        "default_classifier_field": "department",
        "default_eligible_roles": "[5]",
    }
    os.environ |= mock_env

    boto3.setup_default_session(region_name="us-east-1")


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def directory() -> InMemoryDirectory:
    directory = InMemoryDirectory()
    directory.add_custom_field("interests", "interests", datatype="text")
    directory.add_custom_field("birthday", "birthday", datatype="datetime")
    directory.add_member(Member(id=1, attributes={"department": "engineering", "city": "Riga"}))
    directory.add_member(Member(id=2, attributes={"department": "sales", "city": "Tallinn"}))
    directory.add_member(Member(id=3, attributes={"department": "", "city": "Vilnius"}))
    for member_id in (1, 2, 3):
        directory.enrol(10, member_id, {STUDENT})
    return directory
