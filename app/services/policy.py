"""Authorization policy: which role may do what to an order.

Pure functions with no I/O so they can be checked exhaustively in
isolation. Any pair not granted here is denied.
"""

from enum import Enum
from typing import Optional

from app.core.security import Actor, Role
from app.models import OrderStatus

CREATE_ROLES = frozenset({Role.ADMIN, Role.WAITER})
PUBLIC_CREATE_ROLES = CREATE_ROLES | {Role.GUEST}
EDIT_ROLES = frozenset({Role.ADMIN, Role.WAITER})
SOFT_DELETE_ROLES = frozenset({Role.ADMIN})
SETTLE_TAB_ROLES = frozenset({Role.ADMIN, Role.WAITER})

TRANSITION_ROLES: dict[OrderStatus, frozenset[Role]] = {
    OrderStatus.PREPARING: frozenset({Role.ADMIN, Role.KITCHEN}),
    OrderStatus.READY: frozenset({Role.ADMIN, Role.KITCHEN}),
    OrderStatus.COLLECTED: frozenset({Role.ADMIN, Role.WAITER}),
    OrderStatus.CANCELLED: frozenset({Role.ADMIN, Role.KITCHEN}),
}


class EditDecision(str, Enum):
    """Outcome of an edit check."""

    ALLOW = "allow"
    DENY = "deny"
    # The caller owns the order but the kitchen already started it
    LOCKED = "locked"


def may_create(role: Role, public: bool = False) -> bool:
    """Floor staff create on either path; guests only through the public one."""
    return role in (PUBLIC_CREATE_ROLES if public else CREATE_ROLES)


def may_transition(role: Role, target: OrderStatus) -> bool:
    """Return ``True`` if ``role`` may move an order into ``target``."""
    return role in TRANSITION_ROLES.get(target, frozenset())


def edit_decision(
    actor: Actor,
    status: OrderStatus,
    order_tab_id: Optional[str],
) -> EditDecision:
    """Decide whether ``actor`` may edit an order in ``status`` on ``order_tab_id``."""
    if status == OrderStatus.COLLECTED:
        return EditDecision.DENY

    if actor.role in EDIT_ROLES:
        return EditDecision.ALLOW

    if actor.role != Role.GUEST:
        return EditDecision.DENY

    if not actor.tab_id or actor.tab_id != order_tab_id:
        return EditDecision.DENY
    if status == OrderStatus.NEW:
        return EditDecision.ALLOW
    if status in (OrderStatus.PREPARING, OrderStatus.READY):
        return EditDecision.LOCKED
    return EditDecision.DENY


def may_soft_delete(role: Role) -> bool:
    return role in SOFT_DELETE_ROLES


def may_settle_tab(role: Role) -> bool:
    return role in SETTLE_TAB_ROLES
