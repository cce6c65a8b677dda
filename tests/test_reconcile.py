import threading

import pytest
from conftest import CALLER_ID, ROLE_1, ROLE_2, SCOPE_1, SCOPE_2, FakeAccessor

from dirsync_cli.constants import ENTITY_GROUP, RELATION_MEMBERS, RELATION_OWNERS
from dirsync_cli.exceptions import (
    DuplicateNameError,
    NotFoundError,
    PartialReconciliationError,
    ReconciliationCancelled,
    RemoteFailure,
)
from dirsync_cli.models import AppRole, Application, ApplicationApi, Group, PermissionScope
from dirsync_cli.reconcile import (
    APP_ROLES,
    PERMISSION_SCOPES,
    CollectionReplacer,
    DuplicateNameGuard,
    RelationReconciler,
    plan_relation,
)

# relation reconciliation


def test_plan_members_removes_first():
    plan = plan_relation(RELATION_MEMBERS, ["u1", "u2", "u3"], ["u2", "u4"])
    assert plan.to_remove == ["u1", "u3"]
    assert plan.to_add == ["u4"]
    assert [step.action.value for step in plan.steps] == ["remove", "add"]


def test_plan_skips_empty_steps():
    plan = plan_relation(RELATION_MEMBERS, ["u1"], ["u1", "u2"])
    assert [(s.action.value, s.object_ids) for s in plan.steps] == [("add", ["u2"])]
    assert plan_relation(RELATION_MEMBERS, ["u1"], ["u1"]).steps == []


def test_plan_owners_adds_first_when_caller_is_removed():
    plan = plan_relation(RELATION_OWNERS, [CALLER_ID, "o1"], ["o1", "o2"], CALLER_ID.upper())
    assert plan.add_first
    assert [step.action.value for step in plan.steps] == ["add", "remove"]


def test_plan_owners_adds_first_when_all_owners_are_removed():
    plan = plan_relation(RELATION_OWNERS, ["o1", "o2"], ["o3"], CALLER_ID)
    assert plan.add_first


def test_plan_owners_removes_first_when_safe():
    plan = plan_relation(RELATION_OWNERS, ["o1", "o2"], ["o2", "o3"], CALLER_ID)
    assert not plan.add_first
    assert [step.action.value for step in plan.steps] == ["remove", "add"]


def test_reconcile_new_group_members(groups):
    reconciler = RelationReconciler(groups, CALLER_ID)

    reconciler.reconcile("g1", RELATION_MEMBERS, ["u1", "u2"], existing=[])

    assert groups.mutations("add", "remove") == [("add", RELATION_MEMBERS, ["u1", "u2"])]


def test_reconcile_fetches_existing_members(groups):
    groups.relations[("g1", RELATION_MEMBERS)] = ["u1", "u2", "u3"]
    reconciler = RelationReconciler(groups, CALLER_ID)

    reconciler.reconcile("g1", RELATION_MEMBERS, ["u2", "u4"])

    assert ("list_relation", "g1", RELATION_MEMBERS) in groups.calls
    mutations = groups.mutations("add", "remove")
    assert sorted(mutations) == [
        ("add", RELATION_MEMBERS, ["u4"]),
        ("remove", RELATION_MEMBERS, ["u1", "u3"]),
    ]
    assert groups.relations[("g1", RELATION_MEMBERS)] == ["u2", "u4"]


def test_reconcile_twice_is_idempotent(groups):
    groups.relations[("g1", RELATION_MEMBERS)] = ["u1", "u3"]
    reconciler = RelationReconciler(groups, CALLER_ID)
    reconciler.reconcile("g1", RELATION_MEMBERS, ["u1", "u2"])
    first = len(groups.mutations("add", "remove"))

    plan = reconciler.reconcile("g1", RELATION_MEMBERS, ["u1", "u2"])

    assert first == 2
    assert plan.steps == []
    assert len(groups.mutations("add", "remove")) == first


def test_reconcile_owners_never_empty(groups):
    groups.relations[("g1", RELATION_OWNERS)] = [CALLER_ID]
    reconciler = RelationReconciler(groups, CALLER_ID)

    reconciler.reconcile("g1", RELATION_OWNERS, ["o1", "o2"])

    assert groups.mutations("add", "remove") == [
        ("add", RELATION_OWNERS, ["o1", "o2"]),
        ("remove", RELATION_OWNERS, [CALLER_ID]),
    ]
    assert all(size > 0 for _, size in groups.relation_sizes)
    assert groups.relations[("g1", RELATION_OWNERS)] == ["o1", "o2"]


def test_reconcile_partial_failure_reports_completed_steps(groups):
    groups.relations[("g1", RELATION_MEMBERS)] = ["u1"]
    groups.failures["add"] = RemoteFailure("throttled", status_code=429)
    reconciler = RelationReconciler(groups, CALLER_ID)

    with pytest.raises(PartialReconciliationError) as excinfo:
        reconciler.reconcile("g1", RELATION_MEMBERS, ["u2"])

    assert excinfo.value.completed == ["remove members ['u1']"]
    assert excinfo.value.failed == "add members ['u2']"
    assert excinfo.value.entity_id == "g1"
    assert excinfo.value.relation == RELATION_MEMBERS
    assert isinstance(excinfo.value.__cause__, RemoteFailure)


def test_reconcile_first_step_failure_propagates_with_relation(groups):
    groups.failures["add"] = RemoteFailure("forbidden", status_code=403, entity_id="g1")
    reconciler = RelationReconciler(groups, CALLER_ID)

    with pytest.raises(RemoteFailure) as excinfo:
        reconciler.reconcile("g1", RELATION_MEMBERS, ["u1"], existing=[])

    assert excinfo.value.status_code == 403
    assert excinfo.value.relation == RELATION_MEMBERS


def test_reconcile_cancelled_before_next_step(groups):
    cancel = threading.Event()
    cancel.set()
    reconciler = RelationReconciler(groups, CALLER_ID, cancel)

    with pytest.raises(ReconciliationCancelled) as excinfo:
        reconciler.reconcile("g1", RELATION_MEMBERS, ["u1"], existing=[])

    assert excinfo.value.completed == []
    assert groups.mutations("add", "remove") == []


# nested collection replacement


def make_role(role_id: str, enabled: bool = True, value: str = "reader") -> AppRole:
    return AppRole(
        id=role_id,
        allowed_member_types=["User"],
        display_name=value.title(),
        description=f"Can {value}",
        is_enabled=enabled,
        value=value,
    )


def test_replace_app_roles_disables_then_sets(applications):
    applications.entities["a1"] = Application(id="a1", app_roles=[make_role(ROLE_1)])
    replacer = CollectionReplacer(applications)
    desired = [make_role(ROLE_2, value="writer")]

    calls = replacer.replace("a1", APP_ROLES, desired)

    assert calls == 2
    updates = applications.mutations("update")
    assert len(updates) == 2
    assert updates[0] == ("update", "a1", {"app_roles": [make_role(ROLE_1, enabled=False)]})
    assert updates[1] == ("update", "a1", {"app_roles": desired})
    assert applications.entities["a1"].app_roles == desired


def test_replace_fetches_fresh_state(applications):
    applications.entities["a1"] = Application(id="a1", app_roles=[make_role(ROLE_1)])
    CollectionReplacer(applications).replace("a1", APP_ROLES, [])
    assert applications.calls[0] == ("get", "a1")


def test_replace_matching_collection_is_noop(applications):
    applications.entities["a1"] = Application(id="a1", app_roles=[make_role(ROLE_1)])

    calls = CollectionReplacer(applications).replace("a1", APP_ROLES, [make_role(ROLE_1)])

    assert calls == 0
    assert applications.mutations("update") == []


def test_replace_missing_collection_counts_as_empty(applications):
    applications.entities["a1"] = Application(id="a1")
    assert CollectionReplacer(applications).replace("a1", APP_ROLES, []) == 0


def test_replace_with_empty_collection_clears(applications):
    applications.entities["a1"] = Application(id="a1", app_roles=[make_role(ROLE_1)])

    calls = CollectionReplacer(applications).replace("a1", APP_ROLES, [])

    assert calls == 2
    assert applications.mutations("update")[1] == ("update", "a1", {"app_roles": []})


def test_replace_without_current_items_skips_disabling(applications):
    applications.entities["a1"] = Application(id="a1", app_roles=[])

    calls = CollectionReplacer(applications).replace("a1", APP_ROLES, [make_role(ROLE_1)])

    assert calls == 1
    assert applications.mutations("update") == [
        ("update", "a1", {"app_roles": [make_role(ROLE_1)]})
    ]


def test_replace_permission_scopes(applications):
    current = PermissionScope(id=SCOPE_1, value="read", admin_consent_display_name="Read")
    applications.entities["a1"] = Application(
        id="a1", api=ApplicationApi(oauth2_permission_scopes=[current])
    )
    desired = [PermissionScope(id=SCOPE_2, value="write", admin_consent_display_name="Write")]

    CollectionReplacer(applications).replace("a1", PERMISSION_SCOPES, desired)

    first, second = applications.mutations("update")
    disabled = first[2]["api"].oauth2_permission_scopes
    assert [(s.id, s.is_enabled) for s in disabled] == [(SCOPE_1, False)]
    assert second[2]["api"].oauth2_permission_scopes == desired
    assert applications.entities["a1"].api.oauth2_permission_scopes == desired


def test_replace_missing_entity(applications):
    with pytest.raises(NotFoundError) as excinfo:
        CollectionReplacer(applications).replace("gone", APP_ROLES, [])
    assert excinfo.value.entity_id == "gone"


def test_replace_failure_after_disabling_is_partial(applications):
    applications.entities["a1"] = Application(id="a1", app_roles=[make_role(ROLE_1)])
    replacer = CollectionReplacer(applications)

    def reject_new_roles(_, fields):
        if fields["app_roles"] and fields["app_roles"][0].id == ROLE_2:
            applications.failures["update"] = RemoteFailure("invalid", status_code=400)

    applications.on_update.append(reject_new_roles)

    with pytest.raises(PartialReconciliationError) as excinfo:
        replacer.replace("a1", APP_ROLES, [make_role(ROLE_2)])

    assert excinfo.value.completed == ["disable app_roles"]
    assert applications.entities["a1"].app_roles == [make_role(ROLE_1, enabled=False)]


def test_replace_cancelled_after_disabling(applications):
    applications.entities["a1"] = Application(id="a1", app_roles=[make_role(ROLE_1)])
    cancel = threading.Event()
    applications.on_update.append(lambda *_: cancel.set())

    with pytest.raises(ReconciliationCancelled) as excinfo:
        CollectionReplacer(applications, cancel).replace("a1", APP_ROLES, [])

    assert excinfo.value.completed == ["disable app_roles"]
    assert len(applications.mutations("update")) == 1


# duplicate name guard


def test_guard_rejects_duplicate_on_create():
    groups = FakeAccessor(
        ENTITY_GROUP,
        Group,
        [Group(id="g1", display_name="admins"), Group(id="g2", display_name="admins")],
    )

    with pytest.raises(DuplicateNameError) as excinfo:
        DuplicateNameGuard(groups).check_apply(None, "admins")

    assert excinfo.value.existing_id in ("g1", "g2")
    assert groups.calls == [("list", "displayName eq 'admins'")]


def test_guard_checks_exact_name():
    groups = FakeAccessor(ENTITY_GROUP, Group, [Group(id="g1", display_name="Admins")])
    guard = DuplicateNameGuard(groups)

    assert guard.find_by_name("admins") == []
    guard.check_apply(None, "admins")


def test_guard_accepts_own_name():
    groups = FakeAccessor(ENTITY_GROUP, Group, [Group(id="g1", display_name="admins")])
    DuplicateNameGuard(groups).check_apply("G1", "admins")


def test_guard_rejects_rename_to_taken_name():
    groups = FakeAccessor(
        ENTITY_GROUP,
        Group,
        [Group(id="g1", display_name="admins"), Group(id="g2", display_name="users")],
    )

    with pytest.raises(DuplicateNameError) as excinfo:
        DuplicateNameGuard(groups).check_plan("g1", "admins", "users")

    assert excinfo.value.existing_id == "g2"
    assert excinfo.value.operation == "plan"


def test_guard_plan_skips_unchanged_name():
    groups = FakeAccessor(ENTITY_GROUP, Group, [Group(id="g2", display_name="admins")])
    DuplicateNameGuard(groups).check_plan("g1", "admins", "admins")
    assert groups.calls == []


def test_guard_rejects_entity_without_id():
    groups = FakeAccessor(ENTITY_GROUP, Group)
    groups.entities["x"] = Group(display_name="admins")

    with pytest.raises(RemoteFailure):
        DuplicateNameGuard(groups).check_apply(None, "admins")
