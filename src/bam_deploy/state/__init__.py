"""Local state: project config, function library and API registry."""

from .manager import StateStore
from .models import ApiRecord, FunctionRecord, MethodPermissionIds, ProjectConfig

__all__ = [
    "ApiRecord",
    "FunctionRecord",
    "MethodPermissionIds",
    "ProjectConfig",
    "StateStore",
]
