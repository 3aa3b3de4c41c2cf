"""Tests for RoleProvisioner idempotence."""

import json

import pytest

from bam_deploy.provisioners.iam import (
    LAMBDA_BASIC_EXECUTION_POLICY_ARN,
    LAMBDA_ROLE_POLICY_ARN,
    RoleProvisioner,
    load_data_access_policy,
)
from conftest import ACCOUNT_ID, attached_policies, create_role, watching

MUTATING_CALLS = ("create_role", "create_policy", "attach_role_policy")


@pytest.fixture
def roles(aws):
    return RoleProvisioner(aws)


@pytest.fixture
def iam_mutations(aws):
    with watching(aws.get_client("iam"), *MUTATING_CALLS) as calls:
        yield calls


def mutation_count(calls):
    return sum(mock.call_count for mock in calls.values())


class TestExecutionRole:
    def test_creates_role_with_lambda_trust(self, aws, roles):
        assert roles.ensure_role("app") is True

        trust = aws.get_client("iam").get_role(RoleName="app")["Role"]["AssumeRolePolicyDocument"]
        if isinstance(trust, str):
            trust = json.loads(trust)
        assert trust["Statement"][0]["Principal"] == {"Service": "lambda.amazonaws.com"}
        assert trust["Statement"][0]["Action"] == "sts:AssumeRole"

    def test_provision_attaches_both_managed_policies(self, aws, roles):
        roles.provision_execution_role("app")
        assert sorted(attached_policies(aws, "app")) == sorted([
            LAMBDA_BASIC_EXECUTION_POLICY_ARN,
            LAMBDA_ROLE_POLICY_ARN,
        ])

    def test_second_run_makes_no_changes(self, roles, iam_mutations):
        roles.provision_execution_role("app")
        first = mutation_count(iam_mutations)

        roles.provision_execution_role("app")

        assert mutation_count(iam_mutations) == first
        assert roles.ensure_role("app") is False

    def test_existing_role_gets_missing_attachment(self, aws, roles, iam_mutations):
        create_role(aws, "app")
        aws.get_client("iam").attach_role_policy(
            RoleName="app", PolicyArn=LAMBDA_BASIC_EXECUTION_POLICY_ARN
        )
        iam_mutations["attach_role_policy"].reset_mock()
        iam_mutations["create_role"].reset_mock()

        roles.provision_execution_role("app")

        iam_mutations["create_role"].assert_not_called()
        iam_mutations["attach_role_policy"].assert_called_once_with(
            RoleName="app", PolicyArn=LAMBDA_ROLE_POLICY_ARN
        )


class TestDataAccessRole:
    def test_creates_account_scoped_policy(self, aws, roles):
        policy_arn = roles.provision_data_access_role("dbRole", ACCOUNT_ID)

        assert policy_arn == f"arn:aws:iam::{ACCOUNT_ID}:policy/dbRolePolicy"
        iam = aws.get_client("iam")
        version = iam.get_policy(PolicyArn=policy_arn)["Policy"]["DefaultVersionId"]
        document = iam.get_policy_version(
            PolicyArn=policy_arn, VersionId=version
        )["PolicyVersion"]["Document"]
        if isinstance(document, str):
            document = json.loads(document)
        resources = [s["Resource"] for s in document["Statement"]]
        assert f"arn:aws:dynamodb:*:{ACCOUNT_ID}:table/*" in resources
        assert policy_arn in attached_policies(aws, "dbRole")
        assert LAMBDA_ROLE_POLICY_ARN in attached_policies(aws, "dbRole")

    def test_second_run_makes_no_changes(self, roles, iam_mutations):
        roles.provision_data_access_role("dbRole", ACCOUNT_ID)
        first = mutation_count(iam_mutations)

        roles.provision_data_access_role("dbRole", ACCOUNT_ID)

        assert mutation_count(iam_mutations) == first


def test_policy_template_has_no_placeholder_left():
    policy = load_data_access_policy("111122223333")
    assert "{{accountNumber}}" not in str(policy)
    assert "111122223333" in str(policy)
