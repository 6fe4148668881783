"""Pytest configuration and fixtures."""

import os
import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for aws_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from aws_mock import FakeAws  # noqa: E402

WEB_TEMPLATE = """\
AWSTemplateFormatVersion: "2010-09-09"
Parameters:
  EnvName:
    Type: String
  Size:
    Type: Number
    Default: 1
  ImageId:
    Type: String
  SecretsVersion:
    Type: String
    Default: initial
Resources:
  Handle:
    Type: AWS::CloudFormation::WaitConditionHandle
  Topic:
    Type: AWS::SNS::Topic
    Properties:
      TopicName: !Sub "${EnvName}-topic"
Outputs:
  TopicArn:
    Value: !Ref Topic
"""


@pytest.fixture
def aws() -> FakeAws:
    """Fresh in-memory AWS for each test."""
    return FakeAws()


@pytest.fixture
def web_template(tmp_path: Path) -> Path:
    """A YAML template with short-form intrinsic functions."""
    path = tmp_path / "web.yml"
    path.write_text(WEB_TEMPLATE, encoding="utf-8")
    return path


@pytest.fixture(autouse=True)
def clean_stackops_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Tests never pick up STACKOPS_* settings from the developer's shell."""
    for key in list(os.environ):
        if key.startswith("STACKOPS_"):
            monkeypatch.delenv(key)
