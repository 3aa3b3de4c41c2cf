"""Redeploy state machine: sync a function's code and its API's methods."""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from botocore.exceptions import ClientError
from pydantic import BaseModel, ConfigDict, Field, field_validator

from bam_deploy.config.settings import Settings
from bam_deploy.orchestrator.methods import (
    MethodReconciler,
    MethodSet,
    ReconcileResult,
    normalize_methods,
    resolve_method_set,
)
from bam_deploy.orchestrator.validation import validate_method_set, validate_redeployment
from bam_deploy.provisioners.api_gateway import ApiDeployment, ResourceTree, RestApiProvisioner
from bam_deploy.provisioners.existence import ExistenceOracle
from bam_deploy.provisioners.lambda_function import FunctionProvisioner, package_source
from bam_deploy.state.manager import StateStore
from bam_deploy.state.models import ApiRecord, FunctionRecord, ProjectConfig
from bam_deploy.utils.errors import DeploymentError, ErrorContext, ValidationError, error_handler
from bam_deploy.utils.logging import LogContext, get_logger

logger = get_logger(__name__)

PackageBuilder = Callable[[Union[str, Path], Path, str], bytes]


class RedeployStage(Enum):
    """States of a redeploy run."""
    RESOLVE_IDENTITY = "resolve_identity"
    FETCH_REMOTE_STATE = "fetch_remote_state"
    VALIDATE_REQUEST = "validate_request"
    SYNC_FUNCTION_CODE = "sync_function_code"
    SYNC_ROUTING = "sync_routing"
    PERSIST_STATE = "persist_state"
    DONE = "done"
    ABORTED = "aborted"


TERMINAL_STAGES = (RedeployStage.DONE, RedeployStage.ABORTED)


class RedeployOptions(BaseModel):
    """Caller options for a redeploy.

    Singular and plural spellings are both accepted, as are the camelCase
    names used by older callers (``rmMethods``, ``rmMethod``).
    """

    model_config = ConfigDict(populate_by_name=True)

    methods: Optional[List[str]] = None
    method: Optional[List[str]] = None
    rm_methods: Optional[List[str]] = Field(None, alias="rmMethods")
    rm_method: Optional[List[str]] = Field(None, alias="rmMethod")
    endpoint: bool = False
    description: Optional[str] = None
    source: Optional[str] = None

    @field_validator("methods", "method", "rm_methods", "rm_method", mode="before")
    @classmethod
    def wrap_single_method(cls, v):
        if isinstance(v, str):
            return [v]
        return v

    @property
    def add_requested(self) -> List[str]:
        return normalize_methods((self.methods or []) + (self.method or []))

    @property
    def remove_requested(self) -> List[str]:
        return normalize_methods((self.rm_methods or []) + (self.rm_method or []))

    @property
    def is_adding_methods(self) -> bool:
        return bool(self.methods or self.method)


@dataclass
class RedeployContext:
    """Everything one run learns and produces, passed from stage to stage."""
    resource_name: str
    options: RedeployOptions
    region: str
    rest_api_id: Optional[str] = None
    local_api: Optional[ApiRecord] = None
    api_exists: bool = False
    tree: ResourceTree = field(default_factory=ResourceTree.empty)
    method_set: Optional[MethodSet] = None
    reconcile_result: Optional[ReconcileResult] = None
    deployment: Optional[ApiDeployment] = None
    function: Optional[FunctionRecord] = None
    function_changed: bool = False
    persisted_api: Optional[ApiRecord] = None
    warning: Optional[str] = None
    error: Optional[ValidationError] = None
    history: List[RedeployStage] = field(default_factory=list)


@dataclass
class RedeployResult:
    """Outcome of a redeploy run."""
    stage: RedeployStage
    api: Optional[ApiRecord] = None
    warning: Optional[str] = None
    error: Optional[ValidationError] = None
    history: List[RedeployStage] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.stage is RedeployStage.DONE


class RedeployOrchestrator:
    """Drives one redeploy from local state to a persisted, consistent record.

    Stages run strictly in sequence. A validation failure ends the run in
    ABORTED before any remote mutation. A remote failure during a sync stage
    also ends in ABORTED and is raised as a DeploymentError; local state is
    only written in PERSIST_STATE, so it keeps its last good value.
    """

    def __init__(
        self,
        config: ProjectConfig,
        store: StateStore,
        oracle: ExistenceOracle,
        function_provisioner: FunctionProvisioner,
        api_provisioner: RestApiProvisioner,
        reconciler: Optional[MethodReconciler] = None,
        settings: Optional[Settings] = None,
        package_builder: Optional[PackageBuilder] = None
    ):
        self.config = config
        self.store = store
        self.oracle = oracle
        self.function_provisioner = function_provisioner
        self.api_provisioner = api_provisioner
        self.reconciler = reconciler or MethodReconciler(api_provisioner)
        self.settings = settings or Settings()
        self.package_builder = package_builder or package_source

        self._handlers: Dict[RedeployStage, Callable[[RedeployContext], RedeployStage]] = {
            RedeployStage.RESOLVE_IDENTITY: self.resolve_identity,
            RedeployStage.FETCH_REMOTE_STATE: self.fetch_remote_state,
            RedeployStage.VALIDATE_REQUEST: self.validate_request,
            RedeployStage.SYNC_FUNCTION_CODE: self.sync_function_code,
            RedeployStage.SYNC_ROUTING: self.sync_routing,
            RedeployStage.PERSIST_STATE: self.persist_state,
        }

    def redeploy(self, resource_name: str, options: Optional[RedeployOptions] = None) -> RedeployResult:
        """Run the state machine for ``resource_name``.

        Raises:
            DeploymentError: If a remote call fails after validation
        """
        ctx = RedeployContext(
            resource_name=resource_name,
            options=options or RedeployOptions(),
            region=self.config.region,
        )

        with LogContext(resource_name=resource_name):
            stage = RedeployStage.RESOLVE_IDENTITY
            while stage not in TERMINAL_STAGES:
                ctx.history.append(stage)
                stage = self._run_stage(stage, ctx)
            ctx.history.append(stage)

            if stage is RedeployStage.DONE:
                self.finish(ctx)
            else:
                logger.warning(ctx.warning)

        return RedeployResult(
            stage=stage,
            api=ctx.persisted_api,
            warning=ctx.warning,
            error=ctx.error,
            history=ctx.history,
        )

    def _run_stage(self, stage: RedeployStage, ctx: RedeployContext) -> RedeployStage:
        try:
            return self._handlers[stage](ctx)
        except (ClientError, DeploymentError) as e:
            ctx.history.append(RedeployStage.ABORTED)
            error = error_handler.handle_exception(
                e,
                ErrorContext(
                    resource_name=ctx.resource_name,
                    resource_type='lambda',
                    operation=stage.value,
                ),
            )
            error_handler.log_error(error)
            if error is e:
                raise
            raise error from e

    # -- stages ---------------------------------------------------------

    def resolve_identity(self, ctx: RedeployContext) -> RedeployStage:
        ctx.local_api = self.store.get_api(ctx.region, ctx.resource_name)
        ctx.rest_api_id = ctx.local_api.rest_api_id if ctx.local_api else None
        logger.debug(f"Recorded REST API id: {ctx.rest_api_id}")
        return RedeployStage.FETCH_REMOTE_STATE

    def fetch_remote_state(self, ctx: RedeployContext) -> RedeployStage:
        # Local state may predate a manual deletion, so always re-check
        ctx.api_exists = self.oracle.does_api_exist(ctx.rest_api_id)

        if ctx.api_exists:
            ctx.tree = self.api_provisioner.get_resource_tree(ctx.rest_api_id)
        else:
            if ctx.rest_api_id:
                logger.info(f"Recorded API {ctx.rest_api_id} no longer exists")
            ctx.tree = ResourceTree.empty()

        return RedeployStage.VALIDATE_REQUEST

    def validate_request(self, ctx: RedeployContext) -> RedeployStage:
        invalid = validate_redeployment(ctx.resource_name, self.store, ctx.region, self.oracle)
        if invalid:
            return self._reject(ctx, invalid)

        ctx.method_set = resolve_method_set(
            ctx.options.add_requested,
            ctx.options.remove_requested,
            ctx.tree.existing_methods,
        )
        invalid = validate_method_set(ctx.method_set)
        if invalid:
            return self._reject(ctx, invalid)

        return RedeployStage.SYNC_FUNCTION_CODE

    def _reject(self, ctx: RedeployContext, message: str) -> RedeployStage:
        ctx.warning = message
        ctx.error = ValidationError(
            message,
            context=ErrorContext(
                resource_name=ctx.resource_name,
                resource_type='lambda',
                operation=RedeployStage.VALIDATE_REQUEST.value,
            ),
        )
        return RedeployStage.ABORTED

    def sync_function_code(self, ctx: RedeployContext) -> RedeployStage:
        name = ctx.resource_name

        ctx.function = self.store.get_function(ctx.region, name)
        if ctx.function is None:
            # Exists remotely but was never recorded: adopt it on persist
            configuration = self.function_provisioner.get_function_configuration(name)
            ctx.function = FunctionRecord(
                arn=configuration['FunctionArn'],
                description=configuration.get('Description', ''),
            )
            ctx.function_changed = True

        zip_bytes = None
        if ctx.options.source:
            zip_bytes = self.package_builder(ctx.options.source, self.store.staging_dir(name), name)

        response = self.function_provisioner.update_function(
            name, zip_bytes=zip_bytes, description=ctx.options.description
        )
        if not response:
            ctx.warning = f"Lambda \"{name}\" could not be updated"
            return RedeployStage.ABORTED

        if ctx.options.description is not None:
            ctx.function.description = ctx.options.description
            ctx.function_changed = True

        return RedeployStage.SYNC_ROUTING

    def sync_routing(self, ctx: RedeployContext) -> RedeployStage:
        method_set = ctx.method_set
        options = ctx.options
        api_recorded = bool(ctx.rest_api_id)

        if not ctx.api_exists and (api_recorded or options.is_adding_methods or options.endpoint):
            # The fresh API is created with exactly add_methods, so there is
            # nothing to remove and no need to re-read its resources.
            if method_set.remove_methods:
                logger.debug(f"Ignoring removals on new API: {method_set.remove_methods}")
            ctx.deployment = self.api_provisioner.deploy_api(
                ctx.resource_name, method_set.add_methods, self.settings.stage_name
            )
        elif ctx.api_exists and (options.is_adding_methods or method_set.remove_methods):
            if not method_set.has_changes:
                logger.info("Requested methods are already attached")
                return RedeployStage.PERSIST_STATE

            existing_ids = ctx.local_api.method_permission_ids if ctx.local_api else {}
            ctx.reconcile_result = self.reconciler.reconcile(
                ctx.tree,
                method_set,
                ctx.rest_api_id,
                ctx.resource_name,
                existing_ids,
            )
            if method_set.remaining_methods:
                self.api_provisioner.create_deployment(ctx.rest_api_id, self.settings.stage_name)
            else:
                # API Gateway refuses to deploy an API without methods
                logger.warning(
                    f"API {ctx.rest_api_id} has no methods left; "
                    f"stage \"{self.settings.stage_name}\" was not redeployed"
                )

        return RedeployStage.PERSIST_STATE

    def persist_state(self, ctx: RedeployContext) -> RedeployStage:
        region, name = ctx.region, ctx.resource_name

        # The function entry goes first; API records are attached to it
        if ctx.function_changed:
            recorded = self.store.get_function(region, name) is not None
            self.store.write_function(region, name, ctx.function.arn, ctx.function.description)
            if not recorded:
                logger.info(f"Lambda \"{name}\" added to the local library")

        if ctx.deployment is not None:
            deployment = ctx.deployment
            ctx.persisted_api = self.store.write_api(
                region,
                name,
                deployment.rest_api_id,
                deployment.endpoint,
                deployment.method_permission_ids,
            )
            self.store.record_function_api(region, name, ctx.persisted_api)
        elif ctx.reconcile_result is not None and ctx.local_api is not None:
            ctx.persisted_api = self.store.merge_api_permissions(
                region,
                name,
                ctx.reconcile_result.added,
                ctx.reconcile_result.removed,
            )
            self.store.record_function_api(region, name, ctx.persisted_api)
        elif ctx.api_exists and ctx.local_api is not None:
            ctx.persisted_api = self._repair_api_record(ctx)

        return RedeployStage.DONE

    def _repair_api_record(self, ctx: RedeployContext) -> ApiRecord:
        """Re-align the stored permission map with what the API really routes.

        Grants found on the function overwrite stored ids; methods the root
        resource no longer carries are dropped.
        """
        observed = self.api_provisioner.get_permission_ids(ctx.resource_name, ctx.rest_api_id)
        merged = dict(ctx.local_api.method_permission_ids)
        merged.update(observed)

        attached = set(ctx.tree.existing_methods)
        merged = {method: ids for method, ids in merged.items() if method in attached}

        return self.store.write_api(
            ctx.region,
            ctx.resource_name,
            ctx.rest_api_id,
            ctx.local_api.endpoint or self.api_provisioner.endpoint_for(ctx.rest_api_id),
            merged,
        )

    def finish(self, ctx: RedeployContext) -> None:
        self.store.delete_staging_dir(ctx.resource_name)
        if ctx.persisted_api is not None and ctx.deployment is not None:
            logger.info(f"Endpoint: {ctx.persisted_api.endpoint}")
        logger.info(f"Lambda \"{ctx.resource_name}\" has been updated")
