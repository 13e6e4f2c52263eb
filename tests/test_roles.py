"""
Tests for roles, modes and role precedence.
"""
import pytest

from gigpanel.features.permissions.catalog import default_catalog
from gigpanel.features.permissions.exceptions import UnknownMode, UnknownRole
from gigpanel.features.permissions.roles import (
    ADMIN_GRANTS,
    MODERATOR_GRANTS,
    Mode,
    RoleKey,
    effective_role,
)


class TestRoleKey:
    def test_parse(self):
        assert RoleKey.parse("admin") is RoleKey.ADMIN
        assert RoleKey.parse(RoleKey.MODERATOR) is RoleKey.MODERATOR

    def test_parse_unknown(self):
        with pytest.raises(UnknownRole):
            RoleKey.parse("root")

    def test_label(self):
        assert RoleKey.SUPER_ADMIN.label == "Super Admin"


class TestMode:
    def test_none_means_all(self):
        assert Mode.parse(None) is Mode.ALL

    def test_camel_case_aliases(self):
        assert Mode.parse("taskDoer") is Mode.TASK_DOER
        assert Mode.parse("taskGiver") is Mode.TASK_GIVER

    def test_unknown(self):
        with pytest.raises(UnknownMode):
            Mode.parse("spectator")


class TestEffectiveRole:
    def test_strongest_wins(self):
        assert effective_role(["task_doer", "moderator", "task_giver"]) is RoleKey.MODERATOR
        assert effective_role([RoleKey.ADMIN, RoleKey.SUPER_ADMIN]) is RoleKey.SUPER_ADMIN

    def test_no_roles(self):
        assert effective_role([]) is None

    def test_unknown_role_is_not_skipped(self):
        with pytest.raises(UnknownRole):
            effective_role(["admin", "owner"])


class TestDefaultGrants:
    def test_default_grants_are_catalog_keys(self):
        default_catalog.require_all(ADMIN_GRANTS)
        default_catalog.require_all(MODERATOR_GRANTS)

    def test_moderator_is_a_subset_of_admin(self):
        assert set(MODERATOR_GRANTS) <= set(ADMIN_GRANTS)
