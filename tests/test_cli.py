"""CLI commands and seeders, run against the test database."""

import pytest
from typer.testing import CliRunner

import modcore.db.session
from modcore.cli import app
from modcore.db.seeds.seed_permissions import PERMISSION_CATALOG, seed_permissions
from modcore.db.seeds.seed_roles import seed_roles

runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_db(monkeypatch, session_factory):
    monkeypatch.setattr(modcore.db.session, "SessionLocal", session_factory)


def _catalog_size():
    return sum(len(entries) for entries in PERMISSION_CATALOG.values())


def test_seeders_are_idempotent(db, rbac):
    assert seed_roles(db, rbac) == 3
    assert seed_permissions(db, rbac) == _catalog_size()

    assert seed_roles(db, rbac) == 0
    assert seed_permissions(db, rbac) == 0


def test_seeded_grants(db, rbac):
    seed_roles(db, rbac)
    seed_permissions(db, rbac)

    super_admin = {p.slug for p in rbac.get_role_by_slug(db, "super-admin").permissions}
    admin = {p.slug for p in rbac.get_role_by_slug(db, "admin").permissions}
    user = {p.slug for p in rbac.get_role_by_slug(db, "user").permissions}

    assert len(super_admin) == _catalog_size()
    assert "admin.system.manage" in super_admin
    assert not any(slug.startswith("admin.system") for slug in admin)
    assert "roles.manage" in admin
    assert user == {"users.view", "products.view"}


def test_db_seed_command(db, rbac):
    result = runner.invoke(app, ["db", "seed"])
    assert result.exit_code == 0, result.output
    assert "All seeds applied" in result.output
    assert rbac.get_role_by_slug(db, "admin").is_system


def test_assign_and_check(db, rbac):
    runner.invoke(app, ["db", "seed"])

    result = runner.invoke(app, ["rbac", "assign-role", "42", "user"])
    assert result.exit_code == 0, result.output

    allowed = runner.invoke(app, ["rbac", "check", "42", "products.view"])
    assert allowed.exit_code == 0

    denied = runner.invoke(app, ["rbac", "check", "42", "products.delete"])
    assert denied.exit_code == 1

    runner.invoke(app, ["rbac", "grant", "42", "products.delete"])
    assert runner.invoke(app, ["rbac", "check", "42", "products.delete"]).exit_code == 0

    runner.invoke(app, ["rbac", "revoke-role", "42", "user"])
    assert runner.invoke(app, ["rbac", "check", "42", "products.view"]).exit_code == 1


def test_permissions_listing(db, rbac):
    runner.invoke(app, ["db", "seed"])
    runner.invoke(app, ["rbac", "assign-role", "5", "user"])

    result = runner.invoke(app, ["rbac", "permissions", "5"])
    assert result.exit_code == 0
    assert "Roles: user" in result.output
    assert "products.view" in result.output
    assert "products.delete" not in result.output


def test_unknown_role_exits_with_error():
    result = runner.invoke(app, ["rbac", "assign-role", "42", "ghost"])
    assert result.exit_code == 2


def test_cache_commands():
    stats = runner.invoke(app, ["cache", "stats"])
    assert stats.exit_code == 0
    assert '"hits"' in stats.output

    assert runner.invoke(app, ["cache", "clear", "--yes"]).exit_code == 0


def test_init_db_is_repeatable(engine):
    from sqlalchemy import inspect

    from modcore.db.session import init_db

    init_db(bind=engine)
    init_db(bind=engine)
    assert {"roles", "permissions", "role_permissions", "user_roles", "user_permissions"} <= set(
        inspect(engine).get_table_names()
    )
