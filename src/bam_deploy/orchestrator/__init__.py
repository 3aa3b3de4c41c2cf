"""Orchestration of deploys and redeploys."""

from .methods import (
    MethodChange,
    MethodReconciler,
    MethodSet,
    ReconcileResult,
    normalize_methods,
    resolve_method_set,
)
from .redeploy import (
    RedeployContext,
    RedeployOptions,
    RedeployOrchestrator,
    RedeployResult,
    RedeployStage,
)
from .deploy import DeployResult, FunctionDeployer

__all__ = [
    'DeployResult',
    'FunctionDeployer',
    'MethodChange',
    'MethodReconciler',
    'MethodSet',
    'ReconcileResult',
    'RedeployContext',
    'RedeployOptions',
    'RedeployOrchestrator',
    'RedeployResult',
    'RedeployStage',
    'normalize_methods',
    'resolve_method_set',
]
