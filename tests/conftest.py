# tests/conftest.py
import aws_cdk as cdk
import pytest
from aws_cdk.assertions import Template

from infra.stack import GitScanningStack
from models import GitScanningConfig

OPERATOR_ARN = "arn:aws:iam::123456789012:user/scanning-operator"


def synth_template(config: GitScanningConfig) -> Template:
    app = cdk.App()
    stack = GitScanningStack(app, "GitScanningTest", config=config)
    return Template.from_stack(stack)


@pytest.fixture
def config():
    return GitScanningConfig(operator_arn=OPERATOR_ARN)


@pytest.fixture(scope="module")
def template():
    return synth_template(GitScanningConfig(operator_arn=OPERATOR_ARN))


@pytest.fixture(scope="module")
def template_json(template):
    return template.to_json()


@pytest.fixture
def aws_credentials(monkeypatch):
    """Fake credentials so moto never reaches a real account."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
