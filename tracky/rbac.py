"""
tracky/rbac.py

Role-based transition rules for the approval workflow.

Every mutation on an asset or tracker is checked here against the caller's role
AND the entity's current approval state. The rules are one static table so they
can be unit-tested without a transport layer or a database.

Policy choices baked into the table:
- Supervisors may write directly in every state, approved or not.
- Operators never write directly unless a supervisor has granted a one-time
  edit (state `edit_approved`); otherwise they stage changes via request_edit,
  which only applies to approved entities.
- Viewers only read.

Pure Python logic - no FastAPI imports, no database access.
"""

from typing import Dict, FrozenSet, Optional, Set

try:
    from tracky.models import ApprovalState, Operation, Role
except ModuleNotFoundError:
    from models import ApprovalState, Operation, Role


# ============================================================================
# State sets
# ============================================================================

# Operations that do not act on an existing entity are checked with state=None
NO_STATE: FrozenSet[Optional[ApprovalState]] = frozenset({None})
ANY_STATE: FrozenSet[Optional[ApprovalState]] = frozenset(ApprovalState)
APPROVED_STATES: FrozenSet[Optional[ApprovalState]] = frozenset({
    ApprovalState.approved,
    ApprovalState.edit_requested,
    ApprovalState.edit_approved,
})


# ============================================================================
# Transition table: role -> operation -> states in which it is allowed
# ============================================================================

TRANSITIONS: Dict[Role, Dict[Operation, FrozenSet[Optional[ApprovalState]]]] = {
    Role.supervisor: {
        Operation.create: NO_STATE,
        Operation.list: NO_STATE,
        Operation.read: ANY_STATE,
        Operation.update: ANY_STATE,
        Operation.delete: ANY_STATE,
        Operation.approve: ANY_STATE,
        # Whether a request is actually pending is a precondition, not a permission
        Operation.approve_edit: ANY_STATE,
        Operation.append_location: NO_STATE,
    },
    Role.operator: {
        Operation.list: NO_STATE,
        Operation.read: ANY_STATE,
        # One write per supervisor grant
        Operation.update: frozenset({ApprovalState.edit_approved}),
        # A new request replaces a pending request or an unused grant
        Operation.request_edit: APPROVED_STATES,
    },
    Role.viewer: {
        Operation.list: NO_STATE,
        Operation.read: ANY_STATE,
    },
}


# ============================================================================
# Checks
# ============================================================================

def _coerce_role(role) -> Optional[Role]:
    if isinstance(role, Role):
        return role
    return Role.from_claim(role)


def can_transition(role, current_state: Optional[ApprovalState], requested_op: Operation) -> bool:
    """
    Check whether `role` may perform `requested_op` on an entity in `current_state`.

    Args:
        role: Role enum or role claim string (canonical or legacy name)
        current_state: Entity approval state, or None for operations with no target
            entity (create, list, append_location)
        requested_op: Operation being attempted

    Returns:
        True if the table allows it. Unknown roles and operations are denied.
    """
    resolved = _coerce_role(role)
    if resolved is None:
        return False
    allowed_states = TRANSITIONS.get(resolved, {}).get(requested_op, frozenset())
    return current_state in allowed_states


def role_capabilities(role) -> Set[Operation]:
    """Operations a role can perform in at least one state (coarse route-level gate)."""
    resolved = _coerce_role(role)
    if resolved is None:
        return set()
    return {op for op, states in TRANSITIONS.get(resolved, {}).items() if states}


def has_capability(role, op: Operation) -> bool:
    return op in role_capabilities(role)
