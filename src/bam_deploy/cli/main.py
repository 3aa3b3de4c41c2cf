"""Main CLI entry point."""

import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from bam_deploy.config.settings import Settings
from bam_deploy.orchestrator.deploy import FunctionDeployer
from bam_deploy.orchestrator.redeploy import RedeployOptions, RedeployOrchestrator
from bam_deploy.provisioners import (
    ExistenceOracle,
    FunctionProvisioner,
    RestApiProvisioner,
    RoleProvisioner,
)
from bam_deploy.state.manager import StateStore
from bam_deploy.state.models import ProjectConfig
from bam_deploy.utils.aws_client import AWSClientManager
from bam_deploy.utils.errors import ConfigurationError, DeploymentError, error_handler
from bam_deploy.utils.logging import get_logger, setup_logging

console = Console()
logger = get_logger(__name__)

SOURCE_SUFFIXES = ('.py', '.js')


@click.group()
@click.option('--profile', help='AWS profile to use')
@click.option('--region', help='AWS region; must match the project config')
@click.option('--path', 'project_path', default='.', type=click.Path(file_okay=False),
              help='Project directory that holds .bam/')
@click.option('--log-level', default='info', type=click.Choice(['debug', 'info', 'warning', 'error']))
@click.pass_context
def cli(ctx, profile, region, project_path, log_level):
    """Deploy Lambda functions behind API Gateway."""
    ctx.ensure_object(dict)
    ctx.obj['profile'] = profile
    ctx.obj['region'] = region
    store = ctx.obj['store'] = StateStore(project_path)
    setup_logging(log_level, store.bam_path / 'logs' if store.exists() else None)


class Services:
    """Provisioners wired to one project's config and AWS session."""

    def __init__(self, store: StateStore, profile: Optional[str], region: Optional[str]):
        self.store = store
        self.config = store.read_config()
        self.settings = Settings.from_env()
        if region and region != self.config.region:
            # Records and ARNs are scoped to the project region
            raise ConfigurationError(
                f"--region {region} does not match the project region {self.config.region}",
                suggestions=[
                    "Omit --region to use the project region",
                    "Run `bam init` again to move the project to another region",
                ],
            )
        self.clients = AWSClientManager(profile=profile, region=self.config.region)
        self.oracle = ExistenceOracle(self.clients)
        self.roles = RoleProvisioner(self.clients, self.oracle)
        self.functions = FunctionProvisioner(self.clients, self.settings)
        self.apis = RestApiProvisioner(self.clients, self.config.account_number, self.settings)

    @classmethod
    def from_context(cls, ctx) -> 'Services':
        return cls(ctx.obj['store'], ctx.obj['profile'], ctx.obj['region'])


def resolve_source(name: str, source: Optional[str], cwd: Optional[Path] = None) -> Optional[Path]:
    """Find a function's source: explicit path, ``./<name>/`` or ``./<name>.py``/``.js``."""
    if source:
        return Path(source)

    cwd = Path(cwd or Path.cwd())
    if (cwd / name).is_dir():
        return cwd / name
    for suffix in SOURCE_SUFFIXES:
        candidate = cwd / f"{name}{suffix}"
        if candidate.is_file():
            return candidate
    return None


def _warn(result) -> None:
    message = result.error.to_user_message() if result.error else result.warning
    console.print(f"[yellow]{escape(message)}[/yellow]")


def _fail(error: Exception) -> None:
    deployment_error = error_handler.handle_exception(error)
    logger.debug(f"Error details: {deployment_error.to_dict()}")
    console.print(f"[red]{escape(deployment_error.to_user_message())}[/red]")
    sys.exit(1)


@cli.command()
@click.option('--account', 'account_number', required=True, help='AWS account number')
@click.option('--region', 'init_region', required=True, help='AWS region to deploy to')
@click.option('--role', default='defaultBamRole', show_default=True, help='Execution role name')
@click.option('--skip-role', is_flag=True, help='Do not create the execution role')
@click.pass_context
def init(ctx, account_number, init_region, role, skip_role):
    """Write .bam/config.json and create the execution role."""
    store: StateStore = ctx.obj['store']
    config = ProjectConfig(account_number=account_number, region=init_region, role=role)

    try:
        store.initialize(config)
        if not skip_role:
            clients = AWSClientManager(profile=ctx.obj['profile'], region=init_region)
            RoleProvisioner(clients).provision_execution_role(role)
    except Exception as e:
        _fail(e)

    console.print(f"[green]Project initialized[/green] in {store.bam_path}")


@cli.command()
@click.argument('name')
@click.option('--description', default='', help='Function description')
@click.option('--source', type=click.Path(exists=True), help='Source file or directory')
@click.option('--endpoint', is_flag=True, help='Also deploy an API Gateway endpoint')
@click.option('--method', 'methods', multiple=True, help='HTTP method to route (repeatable)')
@click.pass_context
def deploy(ctx, name, description, source, endpoint, methods):
    """Create a new function, optionally behind an API."""
    try:
        services = Services.from_context(ctx)
        source_path = resolve_source(name, source)
        if source_path is None:
            console.print(f"[yellow]No source found for {name}; pass --source[/yellow]")
            sys.exit(1)

        deployer = FunctionDeployer(
            services.config,
            services.store,
            services.oracle,
            services.roles,
            services.functions,
            services.apis,
        )
        result = deployer.deploy(
            name, source_path, description=description, with_api=endpoint, methods=list(methods)
        )
    except DeploymentError as e:
        _fail(e)
    except Exception as e:
        logger.exception("Deploy failed")
        _fail(e)

    if not result.succeeded:
        _warn(result)
        return

    console.print(f"[green]Lambda \"{name}\" has been created[/green]")
    if result.api:
        console.print(f"Endpoint: [cyan]{result.api.endpoint}[/cyan]")


@cli.command()
@click.argument('name')
@click.option('--source', type=click.Path(exists=True), help='Source file or directory')
@click.option('--description', default=None, help='New function description')
@click.option('--method', 'methods', multiple=True, help='HTTP method to add (repeatable)')
@click.option('--rm-method', 'rm_methods', multiple=True, help='HTTP method to remove (repeatable)')
@click.option('--endpoint', is_flag=True, help='Deploy an API if none exists')
@click.pass_context
def redeploy(ctx, name, source, description, methods, rm_methods, endpoint):
    """Update a function's code and the methods its API routes."""
    try:
        services = Services.from_context(ctx)
        source_path = resolve_source(name, source)
        options = RedeployOptions(
            methods=list(methods) or None,
            rm_methods=list(rm_methods) or None,
            endpoint=endpoint,
            description=description,
            source=str(source_path) if source_path else None,
        )
        orchestrator = RedeployOrchestrator(
            services.config,
            services.store,
            services.oracle,
            services.functions,
            services.apis,
            settings=services.settings,
        )
        result = orchestrator.redeploy(name, options)
    except DeploymentError as e:
        _fail(e)
    except Exception as e:
        logger.exception("Redeploy failed")
        _fail(e)

    if not result.succeeded:
        _warn(result)
        return

    console.print(f"[green]Lambda \"{name}\" has been updated[/green]")
    if result.api:
        methods_list = ', '.join(result.api.methods) or 'none'
        console.print(f"Endpoint: [cyan]{result.api.endpoint}[/cyan] ({methods_list})")


@cli.command()
@click.argument('name')
@click.option('--data-access', is_flag=True, help='Grant read/write access to tables in the account')
@click.pass_context
def role(ctx, name, data_access):
    """Create an execution role if it does not exist."""
    try:
        services = Services.from_context(ctx)
        if data_access:
            services.roles.provision_data_access_role(name, services.config.account_number)
        else:
            services.roles.provision_execution_role(name)
    except Exception as e:
        _fail(e)

    console.print(f"[green]Role \"{name}\" is ready[/green]")


@cli.command()
@click.pass_context
def status(ctx):
    """Show recorded functions and their endpoints."""
    store: StateStore = ctx.obj['store']
    try:
        config = store.read_config()
        functions = store.read_functions().get(config.region, {})
        apis = store.read_apis().get(config.region, {})
    except DeploymentError as e:
        _fail(e)

    if not functions:
        console.print("[dim]No functions recorded[/dim]")
        return

    table = Table(title=f"Functions in {config.region}")
    table.add_column("Name", style="cyan")
    table.add_column("Description")
    table.add_column("Endpoint")
    table.add_column("Methods")

    for name, record in sorted(functions.items()):
        api = apis.get(name, {})
        table.add_row(
            name,
            record.get('description', ''),
            api.get('endpoint', '-'),
            ', '.join(api.get('methodPermissionIds', {})) or '-',
        )

    console.print(table)


if __name__ == '__main__':
    cli()
