"""Provisioners for the AWS resources bam manages."""

from .base import BaseProvisioner, ChangeType
from .existence import ExistenceOracle, LookupResult
from .iam import RoleProvisioner
from .lambda_function import FunctionProvisioner, package_source
from .api_gateway import ApiDeployment, ResourceTree, RestApiProvisioner, RestResource

__all__ = [
    'ApiDeployment',
    'BaseProvisioner',
    'ChangeType',
    'ExistenceOracle',
    'FunctionProvisioner',
    'LookupResult',
    'ResourceTree',
    'RestApiProvisioner',
    'RestResource',
    'RoleProvisioner',
    'package_source',
]
