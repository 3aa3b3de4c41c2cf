"""Pytest fixtures for bam-deploy tests.

AWS is mocked with moto: every fixture that touches IAM, Lambda or API
Gateway runs inside ``mock_aws`` and talks to it through real boto3 clients.
Errors moto cannot produce (throttling, access denied) are injected by
patching a single operation on a client.
"""

import io
import json
import zipfile
from contextlib import ExitStack, contextmanager
from typing import Dict, Iterator, List
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError
from moto import mock_aws

from bam_deploy.config.settings import Settings
from bam_deploy.provisioners.iam import build_lambda_assume_role_policy
from bam_deploy.state.manager import StateStore
from bam_deploy.state.models import ProjectConfig
from bam_deploy.utils.aws_client import AWSClientManager

ACCOUNT_ID = "123456789012"
REGION = "us-east-1"

# AWS managed policies (AWSLambdaBasicExecutionRole, AWSLambdaRole) are only
# attachable in moto once loaded
MOTO_CONFIG = {"iam": {"load_aws_managed_policies": True}}


def client_error(code: str, operation: str = "Operation", message: str = "") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message or code}}, operation)


def zip_bytes(handler: str = "def handler(event, context):\n    return {}\n") -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zipf:
        zipf.writestr("index.py", handler)
    return buffer.getvalue()


def failing(client, operation: str, *codes: str):
    """Patch ``operation`` on ``client`` to raise these codes in order, then pass through.

    Use as a context manager; it yields the mock so calls can be counted.
    """
    original = getattr(client, operation)
    errors = [client_error(code, operation) for code in codes]

    def side_effect(*args, **kwargs):
        if errors:
            raise errors.pop(0)
        return original(*args, **kwargs)

    return patch.object(client, operation, side_effect=side_effect)


@contextmanager
def watching(client, *operations: str) -> Iterator[Dict[str, MagicMock]]:
    """Wrap operations on ``client`` in mocks that record calls and still run them."""
    with ExitStack() as stack:
        yield {
            operation: stack.enter_context(
                patch.object(client, operation, wraps=getattr(client, operation))
            )
            for operation in operations
        }


def create_role(aws, name: str = "defaultBamRole") -> str:
    response = aws.get_client("iam").create_role(
        RoleName=name,
        AssumeRolePolicyDocument=json.dumps(build_lambda_assume_role_policy()),
    )
    return response["Role"]["Arn"]


def create_function(aws, name: str, description: str = "") -> str:
    """Create a function directly in moto, as if made outside bam. Returns its ARN."""
    iam = aws.get_client("iam")
    try:
        role_arn = iam.get_role(RoleName="defaultBamRole")["Role"]["Arn"]
    except ClientError:
        role_arn = create_role(aws)

    response = aws.get_client("lambda").create_function(
        FunctionName=name,
        Runtime="python3.12",
        Role=role_arn,
        Handler="index.handler",
        Code={"ZipFile": zip_bytes()},
        Description=description,
    )
    return response["FunctionArn"]


def root_methods(aws, rest_api_id: str) -> List[str]:
    """Methods attached to the ``/`` resource of a REST API."""
    paginator = aws.get_client("apigateway").get_paginator("get_resources")
    for page in paginator.paginate(restApiId=rest_api_id, embed=["methods"]):
        for item in page.get("items", []):
            if item["path"] == "/":
                return list(item.get("resourceMethods") or {})
    return []


def policy_statements(aws, function_name: str) -> List[Dict]:
    """Statements in a function's resource policy; empty if it has none."""
    try:
        response = aws.get_client("lambda").get_policy(FunctionName=function_name)
    except ClientError as e:
        if e.response["Error"]["Code"] == "ResourceNotFoundException":
            return []
        raise
    return json.loads(response["Policy"]).get("Statement", [])


def attached_policies(aws, role_name: str) -> List[str]:
    paginator = aws.get_client("iam").get_paginator("list_attached_role_policies")
    return [
        policy["PolicyArn"]
        for page in paginator.paginate(RoleName=role_name)
        for policy in page["AttachedPolicies"]
    ]


def deployment_count(aws, rest_api_id: str) -> int:
    return len(aws.get_client("apigateway").get_deployments(restApiId=rest_api_id)["items"])


@pytest.fixture
def aws_credentials(monkeypatch):
    """Mock AWS credentials for moto."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", REGION)
    # Unset so moto intercepts every request
    monkeypatch.delenv("AWS_ENDPOINT_URL", raising=False)
    monkeypatch.delenv("AWS_PROFILE", raising=False)


@pytest.fixture
def aws(aws_credentials):
    """A client manager whose IAM, Lambda and API Gateway clients hit moto."""
    with mock_aws(config=MOTO_CONFIG):
        yield AWSClientManager(region=REGION)


@pytest.fixture
def settings():
    """Settings that never sleep between retries."""
    return Settings(retry_max_attempts=3, retry_base_delay=0, retry_max_delay=0)


@pytest.fixture
def config():
    return ProjectConfig(account_number=ACCOUNT_ID, region=REGION, role="defaultBamRole")


@pytest.fixture
def store(tmp_path, config):
    """An initialized project directory."""
    state = StateStore(tmp_path)
    state.initialize(config)
    return state


@pytest.fixture
def source_file(tmp_path):
    path = tmp_path / "src" / "hello.py"
    path.parent.mkdir()
    path.write_text("def handler(event, context):\n    return {'statusCode': 200}\n")
    return path
