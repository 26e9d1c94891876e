"""
tracky/dependencies.py

Reusable FastAPI dependencies: route-level capability gate and the workflow instance.
"""

from __future__ import annotations

from typing import Callable, Optional

from fastapi import Depends

try:
    from tracky.auth_context import require_actor
    from tracky.blob import get_blob_store
    from tracky.config import IS_DEV
    from tracky.errors import Forbidden
    from tracky.media import MediaCoordinator
    from tracky.models import Actor, Operation
    from tracky.rbac import has_capability
    from tracky.store import EntityStore
    from tracky.workflow import ApprovalWorkflow
except ModuleNotFoundError:
    from auth_context import require_actor
    from blob import get_blob_store
    from config import IS_DEV
    from errors import Forbidden
    from media import MediaCoordinator
    from models import Actor, Operation
    from rbac import has_capability
    from store import EntityStore
    from workflow import ApprovalWorkflow


def require_capability(op: Operation) -> Callable:
    """
    FastAPI dependency factory for the coarse role gate.

    Rejects roles that cannot perform `op` in ANY approval state (e.g. a Viewer
    calling approve). Whether the role may perform it in the entity's CURRENT
    state is decided by the workflow.

    Usage in routes:
        @router.put("/approve/{asset_id}")
        def approve(actor: Actor = Depends(require_capability(Operation.approve))):
            ...
    """

    def capability_checker(actor: Actor = Depends(require_actor)) -> Actor:
        if not has_capability(actor.role, op):
            if IS_DEV:
                print(f"[AUTHZ] Denied: user_id={actor.actor_id}, role={actor.role.value}, op={op.value}")
            raise Forbidden(f"Insufficient permissions - {actor.role.value} cannot {op.value.replace('_', ' ')}")
        return actor

    return capability_checker


_workflow: Optional[ApprovalWorkflow] = None


def get_workflow() -> ApprovalWorkflow:
    """Process-wide workflow over the configured record store and blob store."""
    global _workflow
    if _workflow is None:
        _workflow = ApprovalWorkflow(EntityStore(), MediaCoordinator(get_blob_store()))
    return _workflow
