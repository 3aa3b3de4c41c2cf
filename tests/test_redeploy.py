"""Tests for the redeploy state machine."""

import pytest

from bam_deploy.orchestrator.redeploy import (
    RedeployOptions,
    RedeployOrchestrator,
    RedeployStage,
)
from bam_deploy.provisioners.api_gateway import RestApiProvisioner
from bam_deploy.provisioners.existence import ExistenceOracle
from bam_deploy.provisioners.lambda_function import FunctionProvisioner
from bam_deploy.state.models import MethodPermissionIds
from bam_deploy.utils.errors import DeploymentError, ErrorCategory, ValidationError
from conftest import (
    ACCOUNT_ID,
    REGION,
    create_function,
    deployment_count,
    failing,
    policy_statements,
    root_methods,
    watching,
)

REMOTE_MUTATIONS = {
    "apigateway": (
        "create_rest_api", "create_resource", "put_method", "put_integration",
        "delete_method", "create_deployment",
    ),
    "lambda": (
        "add_permission", "remove_permission",
        "update_function_code", "update_function_configuration",
    ),
}


@pytest.fixture
def apis(aws, settings):
    return RestApiProvisioner(aws, ACCOUNT_ID, settings)


@pytest.fixture
def orchestrator(aws, store, config, settings, apis):
    return RedeployOrchestrator(
        config,
        store,
        ExistenceOracle(aws),
        FunctionProvisioner(aws, settings),
        apis,
        settings=settings,
    )


@pytest.fixture
def hello(aws, store):
    """A function that exists remotely and is recorded locally."""
    arn = create_function(aws, "hello", "says hi")
    store.write_function(REGION, "hello", arn, "says hi")
    return "hello"


@pytest.fixture
def mutations(aws):
    """Every mutating API Gateway and Lambda call, recorded and passed through."""
    with watching(aws.get_client("apigateway"), *REMOTE_MUTATIONS["apigateway"]) as api_calls, \
            watching(aws.get_client("lambda"), *REMOTE_MUTATIONS["lambda"]) as lambda_calls:
        yield {**api_calls, **lambda_calls}


def mutation_count(mutations):
    return sum(mock.call_count for mock in mutations.values())


def record_api(store, apis, name, methods):
    """Deploy an API for ``name`` and record it, as an earlier run would."""
    deployment = apis.deploy_api(name, methods)
    api = store.write_api(REGION, name, deployment.rest_api_id, deployment.endpoint,
                          deployment.method_permission_ids)
    store.record_function_api(REGION, name, api)
    return deployment


def grant_ids(aws, function_name):
    return {statement["Sid"] for statement in policy_statements(aws, function_name)}


class TestOptions:
    def test_single_values_and_camel_case(self):
        options = RedeployOptions(method="get", rmMethods="post")
        assert options.add_requested == ["GET"]
        assert options.remove_requested == ["POST"]
        assert options.is_adding_methods

    def test_plural_and_singular_combine(self):
        options = RedeployOptions(methods=["get", "put"], method="GET")
        assert options.add_requested == ["GET", "PUT"]


class TestAddThenRemove:
    def test_add_then_remove_leaves_empty_map(self, aws, store, orchestrator, hello, mutations):
        first = orchestrator.redeploy(hello, RedeployOptions(methods=["post"]))

        assert first.succeeded
        assert first.api.methods == ["POST"]
        rest_api_id = first.api.rest_api_id
        assert root_methods(aws, rest_api_id) == ["POST"]

        second = orchestrator.redeploy(hello, RedeployOptions(rm_methods=["post"]))

        assert second.succeeded
        assert second.api.rest_api_id == rest_api_id
        assert second.api.method_permission_ids == {}
        assert store.get_api(REGION, hello).method_permission_ids == {}
        assert root_methods(aws, rest_api_id) == []
        assert mutations["create_rest_api"].call_count == 1
        assert policy_statements(aws, hello) == []

    def test_api_left_without_methods_is_not_redeployed(self, aws, orchestrator, hello, mutations):
        first = orchestrator.redeploy(hello, RedeployOptions(methods=["get"]))
        assert mutations["create_deployment"].call_count == 1

        orchestrator.redeploy(hello, RedeployOptions(rm_methods=["get"]))

        assert mutations["create_deployment"].call_count == 1
        assert deployment_count(aws, first.api.rest_api_id) == 1

    def test_history_visits_every_stage(self, orchestrator, hello):
        result = orchestrator.redeploy(hello, RedeployOptions(methods=["get"]))
        assert result.history == [
            RedeployStage.RESOLVE_IDENTITY,
            RedeployStage.FETCH_REMOTE_STATE,
            RedeployStage.VALIDATE_REQUEST,
            RedeployStage.SYNC_FUNCTION_CODE,
            RedeployStage.SYNC_ROUTING,
            RedeployStage.PERSIST_STATE,
            RedeployStage.DONE,
        ]

    def test_function_record_points_at_api(self, store, orchestrator, hello):
        result = orchestrator.redeploy(hello, RedeployOptions(methods=["get"]))
        assert store.get_function(REGION, hello).api.rest_api_id == result.api.rest_api_id


class TestExistingApi:
    def test_adds_and_removes_in_one_run(self, aws, store, apis, orchestrator, hello):
        deployment = record_api(store, apis, hello, ["GET", "POST"])

        result = orchestrator.redeploy(
            hello, RedeployOptions(methods=["put"], rm_methods=["post"])
        )

        assert result.api.methods == ["GET", "PUT"]
        assert sorted(root_methods(aws, deployment.rest_api_id)) == ["GET", "PUT"]
        assert deployment_count(aws, deployment.rest_api_id) == 2

    def test_already_attached_method_is_a_no_op(self, aws, store, apis, orchestrator, hello,
                                                mutations):
        deployment = record_api(store, apis, hello, ["GET"])
        before = mutation_count(mutations)

        result = orchestrator.redeploy(hello, RedeployOptions(methods=["get"]))

        assert result.succeeded
        assert mutation_count(mutations) == before
        assert result.api.methods == ["GET"]
        assert deployment_count(aws, deployment.rest_api_id) == 1

    def test_repairs_stale_permission_ids(self, store, apis, orchestrator, hello):
        deployment = record_api(store, apis, hello, ["GET"])
        stale = MethodPermissionIds(root_permission_id="stale", greedy_permission_id="stale")
        store.write_api(REGION, hello, deployment.rest_api_id, deployment.endpoint,
                        {"GET": stale, "DELETE": stale})

        result = orchestrator.redeploy(hello)

        assert result.api.method_permission_ids == deployment.method_permission_ids

    def test_removal_revokes_grants_missing_from_local_map(self, aws, store, apis,
                                                           orchestrator, hello):
        deployment = record_api(store, apis, hello, ["GET", "POST"])
        get_ids = deployment.method_permission_ids["GET"]
        post_ids = deployment.method_permission_ids["POST"]
        # Local map has drifted: POST was never recorded
        store.write_api(REGION, hello, deployment.rest_api_id, deployment.endpoint,
                        {"GET": get_ids})

        result = orchestrator.redeploy(hello, RedeployOptions(rm_methods=["post"]))

        assert result.succeeded
        assert root_methods(aws, deployment.rest_api_id) == ["GET"]
        remaining = grant_ids(aws, hello)
        assert post_ids.root_permission_id not in remaining
        assert post_ids.greedy_permission_id not in remaining
        assert remaining == {get_ids.root_permission_id, get_ids.greedy_permission_id}

    def test_deleted_api_is_redeployed(self, aws, store, apis, orchestrator, hello):
        deployment = record_api(store, apis, hello, ["GET", "POST"])
        aws.get_client("apigateway").delete_rest_api(restApiId=deployment.rest_api_id)

        result = orchestrator.redeploy(hello)

        assert result.succeeded
        assert result.api.rest_api_id != deployment.rest_api_id
        assert result.api.methods == ["GET"]
        assert store.get_api(REGION, hello).rest_api_id == result.api.rest_api_id

    def test_removal_against_deleted_api_aborts(self, aws, store, apis, orchestrator, hello):
        deployment = record_api(store, apis, hello, ["GET"])
        aws.get_client("apigateway").delete_rest_api(restApiId=deployment.rest_api_id)

        result = orchestrator.redeploy(hello, RedeployOptions(rm_methods=["delete"]))

        assert result.stage is RedeployStage.ABORTED
        assert store.get_api(REGION, hello).rest_api_id == deployment.rest_api_id


class TestValidation:
    def test_unknown_function_aborts_without_mutation(self, store, orchestrator, mutations):
        result = orchestrator.redeploy("ghost", RedeployOptions(methods=["get"]))

        assert result.stage is RedeployStage.ABORTED
        assert result.warning == 'Lambda "ghost" does not exist'
        assert mutation_count(mutations) == 0
        assert store.get_api(REGION, "ghost") is None

    def test_abort_carries_validation_error(self, orchestrator):
        result = orchestrator.redeploy("ghost")

        assert isinstance(result.error, ValidationError)
        assert result.error.category is ErrorCategory.VALIDATION
        assert result.error.context.resource_name == "ghost"
        assert result.error.context.operation == RedeployStage.VALIDATE_REQUEST.value
        assert 'Lambda "ghost" does not exist' in result.error.to_user_message()

    def test_invalid_name(self, orchestrator, mutations):
        result = orchestrator.redeploy("bad name!")
        assert result.stage is RedeployStage.ABORTED
        assert isinstance(result.error, ValidationError)
        assert mutation_count(mutations) == 0

    def test_removing_missing_method_aborts(self, store, apis, orchestrator, hello, source_file,
                                            mutations):
        record_api(store, apis, hello, ["GET"])
        before = mutation_count(mutations)

        result = orchestrator.redeploy(
            hello, RedeployOptions(rm_methods=["delete"], source=str(source_file))
        )

        assert result.stage is RedeployStage.ABORTED
        assert "DELETE" in result.warning
        assert mutation_count(mutations) == before

    def test_add_and_remove_same_method_aborts(self, store, apis, orchestrator, hello):
        record_api(store, apis, hello, ["GET", "POST"])
        result = orchestrator.redeploy(
            hello, RedeployOptions(methods=["put"], rm_methods=["put"])
        )
        assert result.stage is RedeployStage.ABORTED

    def test_unknown_method_aborts(self, orchestrator, hello):
        result = orchestrator.redeploy(hello, RedeployOptions(methods=["fetch"]))
        assert result.stage is RedeployStage.ABORTED
        assert "FETCH" in result.warning


class TestFailures:
    def test_remote_failure_leaves_record_unchanged(self, aws, store, apis, orchestrator, hello):
        record_api(store, apis, hello, ["GET"])
        before = store.get_api(REGION, hello)

        with failing(aws.get_client("apigateway"), "put_method", "BadRequestException"):
            with pytest.raises(DeploymentError) as exc_info:
                orchestrator.redeploy(hello, RedeployOptions(methods=["put"]))

        assert exc_info.value.context.operation == RedeployStage.SYNC_ROUTING.value
        assert store.get_api(REGION, hello) == before

    def test_routing_failure_keeps_recorded_description(self, aws, store, apis, orchestrator,
                                                        hello):
        record_api(store, apis, hello, ["GET"])
        before = store.get_function(REGION, hello)

        with failing(aws.get_client("apigateway"), "put_method", "BadRequestException"):
            with pytest.raises(DeploymentError):
                orchestrator.redeploy(
                    hello, RedeployOptions(methods=["put"], description="new desc")
                )

        assert store.get_function(REGION, hello) == before
        assert store.get_function(REGION, hello).description == "says hi"

    def test_routing_failure_does_not_adopt_function(self, aws, store, orchestrator):
        create_function(aws, "legacy", "made by hand")

        with failing(aws.get_client("apigateway"), "create_rest_api", "BadRequestException"):
            with pytest.raises(DeploymentError):
                orchestrator.redeploy("legacy", RedeployOptions(endpoint=True))

        assert store.get_function(REGION, "legacy") is None

    def test_function_deleted_mid_run_aborts(self, orchestrator, hello, monkeypatch):
        # Lookup sees the function, then it is gone by the time code is pushed
        monkeypatch.setattr(orchestrator.function_provisioner, "update_function",
                            lambda *a, **kw: None)

        result = orchestrator.redeploy(hello)

        assert result.stage is RedeployStage.ABORTED
        assert "could not be updated" in result.warning


class TestFunctionCode:
    def test_pushes_code_and_cleans_staging(self, store, orchestrator, hello, source_file,
                                            mutations):
        result = orchestrator.redeploy(hello, RedeployOptions(source=str(source_file)))

        assert result.succeeded
        assert mutations["update_function_code"].call_count == 1
        assert not store.staging_dir(hello).exists()

    def test_description_is_recorded(self, aws, store, orchestrator, hello):
        orchestrator.redeploy(hello, RedeployOptions(description="says hello"))

        configuration = aws.get_client("lambda").get_function(FunctionName=hello)["Configuration"]
        assert configuration["Description"] == "says hello"
        assert store.get_function(REGION, hello).description == "says hello"

    def test_description_update_keeps_recorded_api(self, store, apis, orchestrator, hello):
        deployment = record_api(store, apis, hello, ["GET"])

        orchestrator.redeploy(hello, RedeployOptions(description="says hello"))

        record = store.get_function(REGION, hello)
        assert record.description == "says hello"
        assert record.api.rest_api_id == deployment.rest_api_id

    def test_no_api_is_created_unless_asked(self, orchestrator, hello, mutations):
        result = orchestrator.redeploy(hello)
        assert result.succeeded
        assert result.api is None
        mutations["create_rest_api"].assert_not_called()

    def test_endpoint_flag_creates_api_with_default_method(self, orchestrator, hello):
        result = orchestrator.redeploy(hello, RedeployOptions(endpoint=True))
        assert result.api.methods == ["GET"]

    def test_remote_only_function_is_adopted(self, aws, store, orchestrator):
        arn = create_function(aws, "legacy", "made by hand")

        result = orchestrator.redeploy("legacy")

        assert result.succeeded
        record = store.get_function(REGION, "legacy")
        assert record.arn == arn
        assert record.description == "made by hand"
