import os
import sys

import boto3
import pytest

# Make the flat top-level modules importable without an install
PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)


@pytest.fixture
def boto_session():
    return boto3.Session(
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
        region_name="eu-west-2",
    )


@pytest.fixture
def sleeps():
    return []


class FakeRunner:
    """Records session commands, returning queued exit statuses"""

    def __init__(self, statuses=None):
        self.statuses = list(statuses or [])
        self.commands = []

    def __call__(self, command):
        self.commands.append(command)
        return self.statuses.pop(0) if self.statuses else 0


@pytest.fixture
def runner():
    return FakeRunner()
