"""Read-only lookups that answer "does this resource already exist"."""

from enum import Enum
from typing import Callable

from botocore.exceptions import ClientError

from bam_deploy.provisioners.base import BaseProvisioner
from bam_deploy.utils.errors import get_error_code
from bam_deploy.utils.logging import get_logger

logger = get_logger(__name__)

NOT_FOUND_CODES = frozenset({
    'NoSuchEntity',
    'NoSuchEntityException',
    'ResourceNotFoundException',
    'NotFoundException',
})


class LookupResult(Enum):
    """Outcome of an existence lookup."""
    PRESENT = "present"
    ABSENT = "absent"
    LOOKUP_FAILED = "lookup_failed"

    @property
    def exists(self) -> bool:
        """Collapse to a boolean; a failed lookup counts as absent."""
        return self is LookupResult.PRESENT


class ExistenceOracle(BaseProvisioner):
    """Checks IAM, Lambda and API Gateway for existing resources.

    A lookup never raises. A not-found error code maps to ``ABSENT``; any other
    failure (throttling, missing permissions, network) maps to
    ``LOOKUP_FAILED`` so tests and callers can tell the two apart. The
    ``does_*`` helpers treat both as "does not exist".
    """

    def _lookup(self, description: str, call: Callable[[], object]) -> LookupResult:
        try:
            call()
        except ClientError as e:
            code = get_error_code(e)
            if code in NOT_FOUND_CODES:
                return LookupResult.ABSENT
            logger.debug(f"Lookup of {description} failed with {code}")
            return LookupResult.LOOKUP_FAILED
        except Exception as e:
            logger.debug(f"Lookup of {description} failed: {type(e).__name__}: {e}")
            return LookupResult.LOOKUP_FAILED
        return LookupResult.PRESENT

    def lookup_role(self, role_name: str) -> LookupResult:
        iam = self.clients.get_client('iam')
        return self._lookup(f"role {role_name}", lambda: iam.get_role(RoleName=role_name))

    def lookup_policy(self, policy_arn: str) -> LookupResult:
        iam = self.clients.get_client('iam')
        return self._lookup(f"policy {policy_arn}", lambda: iam.get_policy(PolicyArn=policy_arn))

    def lookup_policy_attached(self, role_name: str, policy_arn: str) -> LookupResult:
        """PRESENT only if ``policy_arn`` is among the role's attached policies."""
        iam = self.clients.get_client('iam')
        attached = []

        def list_attached():
            paginator = iam.get_paginator('list_attached_role_policies')
            for page in paginator.paginate(RoleName=role_name):
                attached.extend(p['PolicyArn'] for p in page.get('AttachedPolicies', []))

        result = self._lookup(f"attachments of {role_name}", list_attached)
        if result is LookupResult.PRESENT and policy_arn not in attached:
            return LookupResult.ABSENT
        return result

    def lookup_function(self, function_name: str) -> LookupResult:
        lambda_client = self.clients.get_client('lambda')
        return self._lookup(
            f"function {function_name}",
            lambda: lambda_client.get_function(FunctionName=function_name)
        )

    def lookup_rest_api(self, rest_api_id) -> LookupResult:
        if not rest_api_id:
            return LookupResult.ABSENT
        apigateway = self.clients.get_client('apigateway')
        return self._lookup(
            f"rest api {rest_api_id}",
            lambda: apigateway.get_rest_api(restApiId=rest_api_id)
        )

    def does_role_exist(self, role_name: str) -> bool:
        return self.lookup_role(role_name).exists

    def does_policy_exist(self, policy_arn: str) -> bool:
        return self.lookup_policy(policy_arn).exists

    def is_policy_attached(self, role_name: str, policy_arn: str) -> bool:
        return self.lookup_policy_attached(role_name, policy_arn).exists

    def does_function_exist(self, function_name: str) -> bool:
        return self.lookup_function(function_name).exists

    def does_api_exist(self, rest_api_id) -> bool:
        return self.lookup_rest_api(rest_api_id).exists
