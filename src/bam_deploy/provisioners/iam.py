"""Idempotent creation of the execution roles that bam functions run under."""

import json
from pathlib import Path
from typing import Any, Dict, Optional

from bam_deploy.provisioners.base import BaseProvisioner
from bam_deploy.provisioners.existence import ExistenceOracle
from bam_deploy.utils.aws_client import AWSClientManager
from bam_deploy.utils.logging import get_logger

logger = get_logger(__name__)

LAMBDA_BASIC_EXECUTION_POLICY_ARN = 'arn:aws:iam::aws:policy/service-role/AWSLambdaBasicExecutionRole'
LAMBDA_ROLE_POLICY_ARN = 'arn:aws:iam::aws:policy/service-role/AWSLambdaRole'

DATA_ACCESS_POLICY_TEMPLATE = Path(__file__).parent.parent / 'templates' / 'database_role_policy.json'
ACCOUNT_PLACEHOLDER = '{{accountNumber}}'


class RoleProvisioner(BaseProvisioner):
    """Creates roles, policies and attachments only when they are missing.

    Every ``ensure_*`` method checks the ExistenceOracle first, so calling it
    again after a success makes no mutating call.
    """

    def __init__(self, clients: AWSClientManager, oracle: Optional[ExistenceOracle] = None):
        """Initialize role provisioner.

        Args:
            clients: Client manager used for IAM calls
            oracle: Existence lookups; built from ``clients`` when omitted
        """
        super().__init__(clients)
        self.oracle = oracle or ExistenceOracle(clients)

    @property
    def iam_client(self):
        return self.clients.get_client('iam')

    def ensure_role(self, role_name: str) -> bool:
        """Create ``role_name`` with the Lambda trust policy if it is missing.

        Returns:
            True if the role was created by this call
        """
        if self.oracle.does_role_exist(role_name):
            logger.debug(f"Role {role_name} already exists")
            return False

        self.iam_client.create_role(
            RoleName=role_name,
            AssumeRolePolicyDocument=json.dumps(build_lambda_assume_role_policy()),
        )
        logger.info(f"Role \"{role_name}\" has been created")
        return True

    def ensure_policy_attached(self, role_name: str, policy_arn: str) -> bool:
        """Attach ``policy_arn`` to the role unless it is already attached.

        Returns:
            True if the policy was attached by this call
        """
        if self.oracle.is_policy_attached(role_name, policy_arn):
            logger.debug(f"Policy {policy_arn} already attached to {role_name}")
            return False

        self.iam_client.attach_role_policy(RoleName=role_name, PolicyArn=policy_arn)
        logger.info(f"Policy \"{policy_arn}\" has been attached to role \"{role_name}\"")
        return True

    def ensure_data_access_policy(self, role_name: str, account_id: str) -> str:
        """Create the account-scoped data access policy and attach it to the role.

        The policy is named ``<role>Policy`` and its ARN is derived from the
        account id, so existence can be checked without listing policies.

        Returns:
            ARN of the policy
        """
        policy_name = data_access_policy_name(role_name)
        policy_arn = data_access_policy_arn(account_id, policy_name)

        if not self.oracle.does_policy_exist(policy_arn):
            self.iam_client.create_policy(
                PolicyName=policy_name,
                PolicyDocument=json.dumps(load_data_access_policy(account_id)),
            )
            logger.info(f"Policy \"{policy_name}\" has been created")

        self.ensure_policy_attached(role_name, policy_arn)
        return policy_arn

    def provision_execution_role(self, role_name: str) -> None:
        """Default role for functions: basic execution plus invoking other functions."""
        self.ensure_role(role_name)
        self.ensure_policy_attached(role_name, LAMBDA_BASIC_EXECUTION_POLICY_ARN)
        self.ensure_policy_attached(role_name, LAMBDA_ROLE_POLICY_ARN)

    def provision_data_access_role(self, role_name: str, account_id: str) -> str:
        """Role for functions that read and write tables in the account."""
        self.ensure_role(role_name)
        policy_arn = self.ensure_data_access_policy(role_name, account_id)
        self.ensure_policy_attached(role_name, LAMBDA_ROLE_POLICY_ARN)
        return policy_arn


def data_access_policy_name(role_name: str) -> str:
    return f"{role_name}Policy"


def data_access_policy_arn(account_id: str, policy_name: str) -> str:
    return f"arn:aws:iam::{account_id}:policy/{policy_name}"


def load_data_access_policy(account_id: str, template_path: Path = DATA_ACCESS_POLICY_TEMPLATE) -> Dict[str, Any]:
    """Read the policy template and scope it to ``account_id``."""
    template = template_path.read_text(encoding='utf-8')
    return json.loads(template.replace(ACCOUNT_PLACEHOLDER, str(account_id)))


def build_lambda_assume_role_policy() -> Dict[str, Any]:
    """Trust policy that lets the Lambda service assume a role."""
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Principal": {
                    "Service": "lambda.amazonaws.com"
                },
                "Action": "sts:AssumeRole"
            }
        ]
    }
