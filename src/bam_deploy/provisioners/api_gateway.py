"""API Gateway REST API provisioner with Lambda proxy integrations."""

import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from botocore.exceptions import ClientError

from bam_deploy.config.settings import Settings
from bam_deploy.provisioners.base import BaseProvisioner
from bam_deploy.state.models import MethodPermissionIds
from bam_deploy.utils.aws_client import AWSClientManager
from bam_deploy.utils.errors import ProvisioningError, get_error_code
from bam_deploy.utils.logging import get_logger
from bam_deploy.utils.retry import THROTTLE_ERROR, RetryExecutor

logger = get_logger(__name__)

ROOT_PATH = '/'
GREEDY_PATH_PART = '{proxy+}'
GREEDY_PATH = f'/{GREEDY_PATH_PART}'

# Path suffixes used in the invoke permission source ARN
ROOT_SOURCE_PATH = '/'
GREEDY_SOURCE_PATH = '/*'


@dataclass
class RestResource:
    """One node of a REST API's resource tree."""
    id: str
    path: str
    methods: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> 'RestResource':
        return cls(
            id=item['id'],
            path=item.get('path', ''),
            methods=dict(item.get('resourceMethods') or {}),
        )


@dataclass
class ResourceTree:
    """The two resources a bam API routes through: ``/`` and ``/{proxy+}``."""
    root: Optional[RestResource] = None
    greedy: Optional[RestResource] = None

    @classmethod
    def empty(cls) -> 'ResourceTree':
        return cls()

    @classmethod
    def from_items(cls, items: Iterable[Dict[str, Any]]) -> 'ResourceTree':
        tree = cls()
        for item in items:
            path = item.get('path')
            if path == ROOT_PATH:
                tree.root = RestResource.from_item(item)
            elif path == GREEDY_PATH:
                tree.greedy = RestResource.from_item(item)
        return tree

    @property
    def existing_methods(self) -> List[str]:
        """Methods attached to the root resource, in the order AWS returned them."""
        if self.root is None:
            return []
        return list(self.root.methods)

    def resources(self) -> List[tuple]:
        """(resource, source path) pairs that carry integrations."""
        pairs = []
        if self.root is not None:
            pairs.append((self.root, ROOT_SOURCE_PATH))
        if self.greedy is not None:
            pairs.append((self.greedy, GREEDY_SOURCE_PATH))
        return pairs


@dataclass
class ApiDeployment:
    """Result of deploying a brand-new REST API."""
    rest_api_id: str
    endpoint: str
    method_permission_ids: Dict[str, MethodPermissionIds] = field(default_factory=dict)


def new_permission_ids() -> MethodPermissionIds:
    """Fresh statement ids for one method; never reused across methods or runs."""
    return MethodPermissionIds(
        root_permission_id=str(uuid.uuid4()),
        greedy_permission_id=str(uuid.uuid4()),
    )


class RestApiProvisioner(BaseProvisioner):
    """Creates REST APIs and attaches or detaches per-method Lambda integrations."""

    def __init__(
        self,
        clients: AWSClientManager,
        account_id: str,
        settings: Optional[Settings] = None
    ):
        """Initialize REST API provisioner.

        Args:
            clients: Client manager used for API Gateway and Lambda calls
            account_id: Account that owns the functions being fronted
            settings: Stage name and retry tunables
        """
        super().__init__(clients)
        self.account_id = account_id
        self.settings = settings or Settings()
        self.deployment_retry = RetryExecutor(
            THROTTLE_ERROR,
            max_attempts=self.settings.retry_max_attempts,
            base_delay=self.settings.retry_base_delay,
            max_delay=self.settings.retry_max_delay,
        )

    @property
    def apigateway_client(self):
        return self.clients.get_client('apigateway')

    @property
    def lambda_client(self):
        return self.clients.get_client('lambda')

    def function_arn(self, function_name: str) -> str:
        return f"arn:aws:lambda:{self.region}:{self.account_id}:function:{function_name}"

    def endpoint_for(self, rest_api_id: str, stage_name: Optional[str] = None) -> str:
        stage_name = stage_name or self.settings.stage_name
        return f"https://{rest_api_id}.execute-api.{self.region}.amazonaws.com/{stage_name}"

    def get_resource_tree(self, rest_api_id: str) -> ResourceTree:
        """Fetch the API's resources with their attached methods."""
        paginator = self.apigateway_client.get_paginator('get_resources')
        items = []
        for page in paginator.paginate(restApiId=rest_api_id, embed=['methods']):
            items.extend(page.get('items', []))
        return ResourceTree.from_items(items)

    def create_integration(
        self,
        http_method: str,
        resource_id: str,
        rest_api_id: str,
        permission_id: str,
        function_name: str,
        source_path: str
    ) -> None:
        """Route one method on one resource to the function and grant invoke."""
        self.apigateway_client.put_method(
            restApiId=rest_api_id,
            resourceId=resource_id,
            httpMethod=http_method,
            authorizationType='NONE',
        )
        self.apigateway_client.put_integration(
            restApiId=rest_api_id,
            resourceId=resource_id,
            httpMethod=http_method,
            type='AWS_PROXY',
            integrationHttpMethod='POST',
            uri=(
                f"arn:aws:apigateway:{self.region}:lambda:path/2015-03-31/functions/"
                f"{self.function_arn(function_name)}/invocations"
            ),
        )
        # ANY is spelled as a wildcard in execute-api ARNs
        method_segment = '*' if http_method == 'ANY' else http_method
        self.lambda_client.add_permission(
            FunctionName=function_name,
            StatementId=permission_id,
            Action='lambda:InvokeFunction',
            Principal='apigateway.amazonaws.com',
            SourceArn=(
                f"arn:aws:execute-api:{self.region}:{self.account_id}:"
                f"{rest_api_id}/*/{method_segment}{source_path}"
            ),
        )

    def remove_integration(
        self,
        http_method: str,
        resource_id: str,
        rest_api_id: str,
        permission_id: Optional[str],
        function_name: str
    ) -> None:
        """Delete one method from one resource and revoke its invoke grant."""
        self.apigateway_client.delete_method(
            restApiId=rest_api_id,
            resourceId=resource_id,
            httpMethod=http_method,
        )
        if not permission_id:
            return

        try:
            self.lambda_client.remove_permission(
                FunctionName=function_name,
                StatementId=permission_id,
            )
        except ClientError as e:
            # Grant already gone, e.g. revoked by hand
            if get_error_code(e) != 'ResourceNotFoundException':
                raise

    def attach_method(
        self,
        tree: ResourceTree,
        http_method: str,
        rest_api_id: str,
        function_name: str
    ) -> MethodPermissionIds:
        """Integrate one method on the root and greedy resources."""
        permission_ids = new_permission_ids()
        for resource, source_path in tree.resources():
            permission_id = (
                permission_ids.root_permission_id if source_path == ROOT_SOURCE_PATH
                else permission_ids.greedy_permission_id
            )
            self.create_integration(
                http_method, resource.id, rest_api_id, permission_id, function_name, source_path
            )
        logger.debug(f"Attached {http_method} to {rest_api_id}")
        return permission_ids

    def detach_method(
        self,
        tree: ResourceTree,
        http_method: str,
        rest_api_id: str,
        function_name: str,
        permission_ids: Optional[MethodPermissionIds] = None
    ) -> None:
        """Remove one method from every resource that carries it."""
        for resource, source_path in tree.resources():
            if http_method not in resource.methods:
                continue
            permission_id = None
            if permission_ids is not None:
                permission_id = (
                    permission_ids.root_permission_id if source_path == ROOT_SOURCE_PATH
                    else permission_ids.greedy_permission_id
                )
            self.remove_integration(
                http_method, resource.id, rest_api_id, permission_id, function_name
            )
        logger.debug(f"Detached {http_method} from {rest_api_id}")

    def get_permission_ids(self, function_name: str, rest_api_id: str) -> Dict[str, MethodPermissionIds]:
        """Read the function's resource policy back into per-method statement ids.

        Only grants whose source ARN points at ``rest_api_id`` are considered.
        A function without a policy yields an empty mapping.
        """
        try:
            response = self.lambda_client.get_policy(FunctionName=function_name)
        except ClientError as e:
            if get_error_code(e) == 'ResourceNotFoundException':
                return {}
            raise

        statements = json.loads(response['Policy']).get('Statement', [])
        marker = f":{rest_api_id}/*/"
        found: Dict[str, Dict[str, str]] = {}

        for statement in statements:
            source_arn = (
                statement.get('Condition', {}).get('ArnLike', {}).get('AWS:SourceArn', '')
            )
            if marker not in source_arn:
                continue
            method_segment, _, path = source_arn.split(marker, 1)[1].partition('/')
            method = 'ANY' if method_segment == '*' else method_segment
            slot = 'root_permission_id' if path == '' else 'greedy_permission_id'
            found.setdefault(method, {})[slot] = statement['Sid']

        return {
            method: MethodPermissionIds(
                root_permission_id=ids.get('root_permission_id', ''),
                greedy_permission_id=ids.get('greedy_permission_id', ''),
            )
            for method, ids in found.items()
        }

    def create_deployment(self, rest_api_id: str, stage_name: Optional[str] = None) -> Dict[str, Any]:
        """Deploy the stage; throttling is retried with backoff."""
        stage_name = stage_name or self.settings.stage_name
        return self.deployment_retry.execute(
            self.apigateway_client.create_deployment,
            restApiId=rest_api_id,
            stageName=stage_name,
        )

    def deploy_api(
        self,
        api_name: str,
        http_methods: List[str],
        stage_name: Optional[str] = None
    ) -> ApiDeployment:
        """Create a REST API for ``api_name`` and route ``http_methods`` to it.

        Integrations are created one method at a time because API Gateway
        rejects overlapping changes to the same API.
        """
        stage_name = stage_name or self.settings.stage_name

        rest_api_id = self.apigateway_client.create_rest_api(name=api_name)['id']
        tree = self.get_resource_tree(rest_api_id)
        if tree.root is None:
            raise ProvisioningError(f"REST API {rest_api_id} has no root resource")

        greedy = self.apigateway_client.create_resource(
            restApiId=rest_api_id,
            parentId=tree.root.id,
            pathPart=GREEDY_PATH_PART,
        )
        tree.greedy = RestResource(id=greedy['id'], path=GREEDY_PATH)

        method_permission_ids = {}
        for http_method in http_methods:
            method_permission_ids[http_method] = self.attach_method(
                tree, http_method, rest_api_id, api_name
            )

        self.create_deployment(rest_api_id, stage_name)
        endpoint = self.endpoint_for(rest_api_id, stage_name)

        logger.info("API Gateway endpoint has been deployed:")
        logger.info(endpoint)

        return ApiDeployment(
            rest_api_id=rest_api_id,
            endpoint=endpoint,
            method_permission_ids=method_permission_ids,
        )
