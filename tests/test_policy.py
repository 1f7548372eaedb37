import pytest

from app.core.security import Actor, Role
from app.models import OrderStatus
from app.services import policy
from app.services.policy import EditDecision


def actor(role: Role, tab_id: str = None) -> Actor:
    return Actor(actor_id=f"{role.value.lower()}-1", role=role, tab_id=tab_id)


TRANSITION_TABLE = {
    Role.ADMIN: {OrderStatus.PREPARING, OrderStatus.READY, OrderStatus.COLLECTED, OrderStatus.CANCELLED},
    Role.WAITER: {OrderStatus.COLLECTED},
    Role.KITCHEN: {OrderStatus.PREPARING, OrderStatus.READY, OrderStatus.CANCELLED},
    Role.GUEST: set(),
}


@pytest.mark.parametrize("role", list(Role))
@pytest.mark.parametrize("target", list(OrderStatus))
def test_transition_matrix(role, target):
    assert policy.may_transition(role, target) is (target in TRANSITION_TABLE[role])


def test_nobody_may_move_an_order_back_to_new():
    assert not any(policy.may_transition(role, OrderStatus.NEW) for role in Role)


def test_kitchen_cannot_collect():
    assert not policy.may_transition(Role.KITCHEN, OrderStatus.COLLECTED)


def test_create_paths():
    assert policy.may_create(Role.ADMIN)
    assert policy.may_create(Role.WAITER)
    assert not policy.may_create(Role.KITCHEN)
    assert not policy.may_create(Role.GUEST)
    assert {r for r in Role if policy.may_create(r, public=True)} == {Role.ADMIN, Role.WAITER, Role.GUEST}
    assert not policy.may_create(Role.KITCHEN, public=True)


def test_soft_delete_and_settle():
    assert [r for r in Role if policy.may_soft_delete(r)] == [Role.ADMIN]
    assert {r for r in Role if policy.may_settle_tab(r)} == {Role.ADMIN, Role.WAITER}


@pytest.mark.parametrize("status", [s for s in OrderStatus if s != OrderStatus.COLLECTED])
@pytest.mark.parametrize("role", [Role.ADMIN, Role.WAITER])
def test_floor_staff_edit_anything_not_collected(role, status):
    assert policy.edit_decision(actor(role), status, "tab-9") == EditDecision.ALLOW


@pytest.mark.parametrize("role", list(Role))
def test_collected_orders_are_never_editable(role):
    assert policy.edit_decision(actor(role, "tab-1"), OrderStatus.COLLECTED, "tab-1") == EditDecision.DENY


@pytest.mark.parametrize("status", list(OrderStatus))
def test_kitchen_never_edits(status):
    assert policy.edit_decision(actor(Role.KITCHEN), status, None) == EditDecision.DENY


@pytest.mark.parametrize(
    "status, expected",
    [
        (OrderStatus.NEW, EditDecision.ALLOW),
        (OrderStatus.PREPARING, EditDecision.LOCKED),
        (OrderStatus.READY, EditDecision.LOCKED),
        (OrderStatus.CANCELLED, EditDecision.DENY),
    ],
)
def test_guest_edits_own_tab(status, expected):
    assert policy.edit_decision(actor(Role.GUEST, "tab-1"), status, "tab-1") == expected


@pytest.mark.parametrize("guest_tab, order_tab", [("tab-1", "tab-2"), (None, "tab-1"), (None, None)])
def test_guest_cannot_edit_foreign_or_untabbed_orders(guest_tab, order_tab):
    decision = policy.edit_decision(actor(Role.GUEST, guest_tab), OrderStatus.NEW, order_tab)
    assert decision == EditDecision.DENY
