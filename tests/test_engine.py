"""
Tests for the resolution engine.

Tests cover:
- Rule order: restriction, grant, feature flag
- super_admin handling
- Mode fallback
- Integrity errors, timeouts and fail-open
"""
import pytest

from gigpanel.features.permissions.catalog import default_catalog
from gigpanel.features.permissions.engine import Decision, ReasonCode, ResolutionEngine
from gigpanel.features.permissions.exceptions import (
    ResolutionTimeout,
    StoreUnavailable,
    UnknownMode,
    UnknownPermission,
    UnknownRole,
)
from gigpanel.features.permissions.roles import Mode, RoleKey


USER = "user-1"


class TestScenarios:
    """The reference scenarios."""

    async def test_moderator_grant_and_missing_grant(self, engine, grant_source):
        grant_source.grant(RoleKey.MODERATOR, "tasks.view")

        allowed = await engine.resolve("moderator", "tasks.view", "all", USER)
        denied = await engine.resolve("moderator", "tasks.delete", "all", USER)

        assert allowed == Decision("tasks.view", True, ReasonCode.ROLE_GRANT)
        assert denied == Decision("tasks.delete", False, ReasonCode.NO_GRANT)

    async def test_feature_flag_disables_granted_permission(self, engine, grant_source, flags):
        grant_source.grant(RoleKey.ADMIN, "transactions.approve")
        flags.flags["features.transactions.approveEnabled"] = False

        decision = await engine.resolve("admin", "transactions.approve", "all", USER)
        assert decision == Decision("transactions.approve", False, ReasonCode.FEATURE_DISABLED)

    async def test_restriction_denies_granted_permission(self, engine, grant_source, restrictions):
        grant_source.grant(RoleKey.ADMIN, "users.ban")
        restrictions.restrictions[USER] = frozenset({"users.ban"})

        decision = await engine.resolve("admin", "users.ban", "all", USER)
        assert decision == Decision("users.ban", False, ReasonCode.USER_RESTRICTED)

    @pytest.mark.parametrize("role", list(RoleKey))
    async def test_unknown_permission_fails_for_every_role(self, engine, role):
        with pytest.raises(UnknownPermission):
            await engine.resolve(role, "foo.bar", "all", USER)


class TestModuleSwitches:
    async def test_module_switch_disables_whole_module(self, engine, grant_source, flags):
        for key in ("orders.view", "orders.cancel"):
            grant_source.grant(RoleKey.ADMIN, key)
        flags.flags["features.orders.moduleEnabled"] = False
        flags.flags["features.orders.cancelEnabled"] = True

        decisions = await engine.resolve_many(RoleKey.ADMIN, ["orders.view", "orders.cancel"], Mode.ALL, USER)
        assert decisions["orders.view"] == Decision("orders.view", False, ReasonCode.FEATURE_DISABLED)
        assert decisions["orders.cancel"] == Decision("orders.cancel", False, ReasonCode.FEATURE_DISABLED)

    async def test_own_flag_still_applies_with_module_on(self, engine, grant_source, flags):
        grant_source.grant(RoleKey.ADMIN, "orders.cancel")
        flags.flags["features.orders.moduleEnabled"] = True
        flags.flags["features.orders.cancelEnabled"] = False
        decision = await engine.resolve(RoleKey.ADMIN, "orders.cancel", Mode.ALL, USER)
        assert decision.reason is ReasonCode.FEATURE_DISABLED

    async def test_module_switch_applies_to_super_admin(self, engine, flags):
        flags.flags["features.tasks.moduleEnabled"] = False
        decision = await engine.resolve(RoleKey.SUPER_ADMIN, "tasks.view", Mode.ALL, USER)
        assert decision.reason is ReasonCode.FEATURE_DISABLED

    async def test_withdrawals_switch(self, engine, grant_source, flags):
        grant_source.grant(RoleKey.ADMIN, "withdrawals.approve")
        grant_source.grant(RoleKey.ADMIN, "transactions.view")
        flags.flags["features.transactions.withdrawalsEnabled"] = False

        decisions = await engine.resolve_many(
            RoleKey.ADMIN, ["withdrawals.approve", "transactions.view"], Mode.ALL, USER
        )
        assert decisions["withdrawals.approve"].reason is ReasonCode.FEATURE_DISABLED
        assert decisions["transactions.view"].reason is ReasonCode.ROLE_GRANT


class TestDefaultDeny:
    @pytest.mark.parametrize("mode", list(Mode))
    @pytest.mark.parametrize(
        "role", [RoleKey.ADMIN, RoleKey.MODERATOR, RoleKey.TASK_GIVER, RoleKey.TASK_DOER]
    )
    async def test_no_grants_at_all(self, engine, role, mode):
        decisions = await engine.resolve_many(role, [p.key for p in default_catalog], mode, USER)
        assert len(decisions) == len(default_catalog)
        for decision in decisions.values():
            assert not decision
            assert decision.reason is ReasonCode.NO_GRANT

    async def test_explicit_false_grant(self, engine, grant_source):
        grant_source.grant(RoleKey.ADMIN, "users.delete", allow=False)
        decision = await engine.resolve(RoleKey.ADMIN, "users.delete")
        assert decision.reason is ReasonCode.NO_GRANT


class TestSuperAdmin:
    async def test_allowed_without_grants(self, engine):
        decision = await engine.resolve(RoleKey.SUPER_ADMIN, "api.delete", Mode.ALL, USER)
        assert decision == Decision("api.delete", True, ReasonCode.SUPER_ADMIN_OVERRIDE)

    async def test_grant_table_is_not_read(self, engine, grant_source):
        grant_source.fail = True
        decision = await engine.resolve(RoleKey.SUPER_ADMIN, "users.view")
        assert decision.allow
        assert grant_source.loads == 0

    async def test_restriction_still_applies(self, engine, restrictions):
        restrictions.restrictions[USER] = frozenset({"users.delete"})
        decision = await engine.resolve(RoleKey.SUPER_ADMIN, "users.delete", Mode.ALL, USER)
        assert decision.reason is ReasonCode.USER_RESTRICTED

    async def test_feature_flag_still_applies(self, engine, flags):
        flags.flags["features.users.deleteEnabled"] = False
        decision = await engine.resolve(RoleKey.SUPER_ADMIN, "users.delete", Mode.ALL, USER)
        assert decision.reason is ReasonCode.FEATURE_DISABLED


class TestPrecedence:
    async def test_restriction_wins_over_flag(self, engine, grant_source, restrictions, flags):
        grant_source.grant(RoleKey.ADMIN, "users.ban")
        restrictions.restrictions[USER] = frozenset({"users.ban"})
        flags.flags["features.users.banEnabled"] = False

        decision = await engine.resolve(RoleKey.ADMIN, "users.ban", Mode.ALL, USER)
        assert decision.reason is ReasonCode.USER_RESTRICTED

    async def test_missing_grant_wins_over_flag(self, engine, flags):
        flags.flags["features.users.banEnabled"] = False
        decision = await engine.resolve(RoleKey.MODERATOR, "users.ban", Mode.ALL, USER)
        assert decision.reason is ReasonCode.NO_GRANT

    async def test_unset_flag_means_enabled(self, engine, grant_source, flags):
        grant_source.grant(RoleKey.ADMIN, "transactions.approve")
        flags.flags["features.transactions.approveEnabled"] = None
        decision = await engine.resolve(RoleKey.ADMIN, "transactions.approve")
        assert decision.reason is ReasonCode.ROLE_GRANT

    async def test_flag_flip_back_restores_decision(self, engine, grant_source, flags):
        grant_source.grant(RoleKey.MODERATOR, "tasks.approve")
        flags.flags["features.tasks.approveEnabled"] = False
        assert (await engine.resolve(RoleKey.MODERATOR, "tasks.approve")).reason is ReasonCode.FEATURE_DISABLED

        flags.flags["features.tasks.approveEnabled"] = True
        assert (await engine.resolve(RoleKey.MODERATOR, "tasks.approve")).reason is ReasonCode.ROLE_GRANT

        flags.flags["features.tasks.approveEnabled"] = False
        assert not (await engine.resolve(RoleKey.MODERATOR, "tasks.approve")).allow
        del flags.flags["features.tasks.approveEnabled"]
        assert (await engine.resolve(RoleKey.MODERATOR, "tasks.approve")).reason is ReasonCode.ROLE_GRANT

    async def test_restriction_for_other_user_does_not_apply(self, engine, grant_source, restrictions):
        grant_source.grant(RoleKey.ADMIN, "users.ban")
        restrictions.restrictions["someone-else"] = frozenset({"users.ban"})
        assert (await engine.resolve(RoleKey.ADMIN, "users.ban", Mode.ALL, USER)).allow

    async def test_no_user_means_no_restriction_read(self, engine, grant_source, restrictions):
        grant_source.grant(RoleKey.ADMIN, "users.ban")
        assert (await engine.resolve(RoleKey.ADMIN, "users.ban")).allow
        assert restrictions.reads == 0


class TestModes:
    async def test_falls_back_to_all(self, engine, grant_source):
        grant_source.grant(RoleKey.TASK_GIVER, "orders.view", mode=Mode.ALL)
        decision = await engine.resolve(RoleKey.TASK_GIVER, "orders.view", Mode.TASK_GIVER, USER)
        assert decision.reason is ReasonCode.ROLE_GRANT

    async def test_mode_row_wins_over_all(self, engine, grant_source):
        grant_source.grant(RoleKey.TASK_GIVER, "orders.cancel", mode=Mode.ALL)
        grant_source.grant(RoleKey.TASK_GIVER, "orders.cancel", allow=False, mode=Mode.TASK_GIVER)
        decision = await engine.resolve(RoleKey.TASK_GIVER, "orders.cancel", Mode.TASK_GIVER, USER)
        assert decision.reason is ReasonCode.NO_GRANT

    async def test_mode_scoped_grant_does_not_leak_to_all(self, engine, grant_source):
        grant_source.grant(RoleKey.TASK_DOER, "tasks.view", mode=Mode.TASK_DOER)
        assert (await engine.resolve(RoleKey.TASK_DOER, "tasks.view", Mode.TASK_DOER)).allow
        assert not (await engine.resolve(RoleKey.TASK_DOER, "tasks.view", Mode.ALL)).allow
        assert not (await engine.resolve(RoleKey.TASK_DOER, "tasks.view", Mode.TASK_GIVER)).allow

    async def test_mode_alias(self, engine, grant_source):
        grant_source.grant(RoleKey.TASK_DOER, "tasks.view", mode=Mode.TASK_DOER)
        assert (await engine.resolve("task_doer", "tasks.view", "taskDoer")).allow


class TestIntegrityErrors:
    async def test_unknown_role(self, engine):
        with pytest.raises(UnknownRole):
            await engine.resolve("owner", "users.view")

    async def test_unknown_mode(self, engine):
        with pytest.raises(UnknownMode):
            await engine.resolve(RoleKey.ADMIN, "users.view", "weekend")

    async def test_errors_raised_before_any_read(self, engine, grant_source, restrictions, flags):
        with pytest.raises(UnknownPermission):
            await engine.resolve_many(RoleKey.ADMIN, ["users.view", "foo.bar"], Mode.ALL, USER)
        assert (grant_source.loads, restrictions.reads, flags.reads) == (0, 0, 0)


class TestConsistency:
    async def test_grant_change_visible_after_invalidation(self, engine, grant_source):
        grant_source.grant(RoleKey.ADMIN, "users.ban")
        assert (await engine.resolve(RoleKey.ADMIN, "users.ban")).allow

        grant_source.grant(RoleKey.ADMIN, "users.ban", allow=False)
        engine.cache.invalidate_role(RoleKey.ADMIN)
        assert not (await engine.resolve(RoleKey.ADMIN, "users.ban")).allow

    async def test_grant_change_visible_after_ttl(self, engine, grant_source, clock):
        grant_source.grant(RoleKey.ADMIN, "users.ban")
        assert (await engine.resolve(RoleKey.ADMIN, "users.ban")).allow

        grant_source.grant(RoleKey.ADMIN, "users.ban", allow=False)
        assert (await engine.resolve(RoleKey.ADMIN, "users.ban")).allow
        clock.advance(300)
        assert not (await engine.resolve(RoleKey.ADMIN, "users.ban")).allow

    async def test_restriction_applies_immediately(self, engine, grant_source, restrictions):
        grant_source.grant(RoleKey.ADMIN, "users.ban")
        assert (await engine.resolve(RoleKey.ADMIN, "users.ban", Mode.ALL, USER)).allow
        restrictions.restrictions[USER] = frozenset({"users.ban"})
        assert not (await engine.resolve(RoleKey.ADMIN, "users.ban", Mode.ALL, USER)).allow


class TestResolveMany:
    async def test_one_read_per_store(self, engine, grant_source, restrictions, flags):
        grant_source.grant(RoleKey.ADMIN, "tasks.approve")
        grant_source.grant(RoleKey.ADMIN, "orders.refund")
        flags.flags["features.orders.refundEnabled"] = False

        decisions = await engine.resolve_many(
            RoleKey.ADMIN, ["tasks.approve", "orders.refund", "users.delete"], Mode.ALL, USER
        )

        assert {key: d.reason for key, d in decisions.items()} == {
            "tasks.approve": ReasonCode.ROLE_GRANT,
            "orders.refund": ReasonCode.FEATURE_DISABLED,
            "users.delete": ReasonCode.NO_GRANT,
        }
        assert (grant_source.loads, restrictions.reads, flags.reads) == (1, 1, 1)

    async def test_empty(self, engine, restrictions):
        assert await engine.resolve_many(RoleKey.ADMIN, [], Mode.ALL, USER) == {}
        assert restrictions.reads == 0

    async def test_effective_permissions_cover_catalog(self, engine, grant_source):
        grant_source.grant(RoleKey.MODERATOR, "dashboard.view")
        permissions = await engine.effective_permissions(RoleKey.MODERATOR, Mode.ALL, USER)
        assert set(permissions) == {p.key for p in default_catalog}
        assert [key for key, allowed in permissions.items() if allowed] == ["dashboard.view"]


class TestTimeoutAndFailure:
    async def test_timeout(self, cache, restrictions, flags):
        restrictions.delay = 1.0
        engine = ResolutionEngine(default_catalog, cache, restrictions, flags, timeout=0.01)
        with pytest.raises(ResolutionTimeout) as exc_info:
            await engine.resolve(RoleKey.ADMIN, "users.view", Mode.ALL, USER)
        assert exc_info.value.timeout == 0.01

    async def test_per_call_timeout_overrides_default(self, engine, restrictions):
        restrictions.delay = 1.0
        with pytest.raises(ResolutionTimeout):
            await engine.resolve(RoleKey.ADMIN, "users.view", Mode.ALL, USER, timeout=0.01)

    async def test_cold_store_failure_propagates(self, engine, grant_source):
        grant_source.fail = True
        with pytest.raises(StoreUnavailable):
            await engine.resolve(RoleKey.ADMIN, "users.view")

    async def test_fail_open_is_opt_in(self, cache, grant_source, restrictions, flags):
        grant_source.fail = True
        engine = ResolutionEngine(default_catalog, cache, restrictions, flags, fail_open=True)
        restrictions.restrictions[USER] = frozenset({"users.ban"})
        flags.flags["features.users.deleteEnabled"] = False

        decisions = await engine.resolve_many(
            RoleKey.ADMIN, ["users.view", "users.ban", "users.delete"], Mode.ALL, USER
        )

        assert decisions["users.view"] == Decision("users.view", True, ReasonCode.STORE_UNAVAILABLE_FAIL_OPEN)
        assert decisions["users.ban"].reason is ReasonCode.USER_RESTRICTED
        assert decisions["users.delete"].reason is ReasonCode.FEATURE_DISABLED
