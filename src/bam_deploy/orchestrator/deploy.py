"""First-time deploy of a function, optionally with its REST API."""

from dataclasses import dataclass
from typing import Iterable, Optional

from bam_deploy.orchestrator.methods import resolve_method_set
from bam_deploy.orchestrator.validation import validate_method_set, validate_resource_name
from bam_deploy.provisioners.api_gateway import RestApiProvisioner
from bam_deploy.provisioners.existence import ExistenceOracle
from bam_deploy.provisioners.iam import RoleProvisioner
from bam_deploy.provisioners.lambda_function import FunctionProvisioner, package_source
from bam_deploy.state.manager import StateStore
from bam_deploy.state.models import ApiRecord, FunctionRecord, ProjectConfig
from bam_deploy.utils.errors import ErrorContext, ValidationError
from bam_deploy.utils.logging import LogContext, get_logger

logger = get_logger(__name__)


@dataclass
class DeployResult:
    """Outcome of a first-time deploy."""
    function: Optional[FunctionRecord] = None
    api: Optional[ApiRecord] = None
    warning: Optional[str] = None
    error: Optional[ValidationError] = None

    @property
    def succeeded(self) -> bool:
        return self.function is not None


class FunctionDeployer:
    """Creates a function that does not exist yet and records it locally."""

    def __init__(
        self,
        config: ProjectConfig,
        store: StateStore,
        oracle: ExistenceOracle,
        roles: RoleProvisioner,
        function_provisioner: FunctionProvisioner,
        api_provisioner: RestApiProvisioner,
        package_builder=None
    ):
        self.config = config
        self.store = store
        self.oracle = oracle
        self.roles = roles
        self.function_provisioner = function_provisioner
        self.api_provisioner = api_provisioner
        self.package_builder = package_builder or package_source

    def deploy(
        self,
        name: str,
        source,
        description: str = "",
        with_api: bool = False,
        methods: Optional[Iterable[str]] = None
    ) -> DeployResult:
        """Create ``name`` from ``source``; add an API when asked to.

        Returns a result carrying a ValidationError, and makes no remote
        change, if the name is invalid or the function already exists.
        """
        invalid = validate_resource_name(name)
        if invalid:
            return self._reject(name, invalid)

        method_set = resolve_method_set(methods, None, [])
        if with_api or methods:
            invalid = validate_method_set(method_set)
            if invalid:
                return self._reject(name, invalid)

        if self.oracle.does_function_exist(name):
            return self._reject(
                name,
                f"Lambda \"{name}\" already exists",
                suggestions=[f"Use `bam redeploy {name}` to update it"],
            )

        with LogContext(resource_name=name):
            self.roles.provision_execution_role(self.config.role)

            zip_bytes = self.package_builder(source, self.store.staging_dir(name), name)
            response = self.function_provisioner.create_function(
                name, description, zip_bytes, self.config.role_arn
            )
            function = self.store.write_function(
                self.config.region, name, response['FunctionArn'], description
            )

            api = None
            if with_api or methods:
                deployment = self.api_provisioner.deploy_api(name, method_set.add_methods)
                api = self.store.write_api(
                    self.config.region,
                    name,
                    deployment.rest_api_id,
                    deployment.endpoint,
                    deployment.method_permission_ids,
                )
                self.store.record_function_api(self.config.region, name, api)
                function.api = api

            self.store.delete_staging_dir(name)

        return DeployResult(function=function, api=api)

    def _reject(self, name: str, message: str, suggestions=None) -> DeployResult:
        logger.warning(message)
        error = ValidationError(
            message,
            context=ErrorContext(resource_name=name, resource_type='lambda', operation='deploy'),
            suggestions=suggestions,
        )
        return DeployResult(warning=message, error=error)
