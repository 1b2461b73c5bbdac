"""modcore admin CLI."""

from contextlib import contextmanager
from typing import Iterator, Tuple

import typer
from sqlalchemy.orm import Session

from modcore.core.config import settings
from modcore.core.exceptions import ModcoreError
from modcore.services.rbac_service import RBACService

app = typer.Typer(name="modcore", help="modcore RBAC and cache admin CLI")
db_app = typer.Typer(help="Database management commands")
rbac_app = typer.Typer(help="Role and permission commands")
cache_app = typer.Typer(help="Cache commands")
app.add_typer(db_app, name="db")
app.add_typer(rbac_app, name="rbac")
app.add_typer(cache_app, name="cache")


@contextmanager
def _rbac_session() -> Iterator[Tuple[Session, RBACService]]:
    """A session plus an RBAC service whose cache is closed afterwards."""
    from modcore.cache import build_cache, build_rbac_cache
    from modcore.db.session import SessionLocal

    cache = None
    if settings.RBAC_CACHE_ENABLED and settings.CACHE_REDIS_ENABLED:
        cache = build_cache(settings)
    rbac = RBACService(
        cache=build_rbac_cache(cache, settings) if cache is not None else None,
        cache_ttl=settings.RBAC_CACHE_TTL,
    )
    db = SessionLocal()
    try:
        yield db, rbac
    except ModcoreError as e:
        typer.echo(f"❌ {e.message}", err=True)
        raise typer.Exit(code=2)
    finally:
        db.close()
        if cache is not None:
            cache.close()


@db_app.command("init")
def db_init():
    """Create all tables that don't exist yet."""
    from modcore.db.session import init_db

    init_db()
    typer.echo("✅ Tables created (or already exist)")


@db_app.command("seed")
def db_seed():
    """Seed system roles and the default permission catalog."""
    from modcore.db.seeds.seed_permissions import seed_permissions
    from modcore.db.seeds.seed_roles import seed_roles

    with _rbac_session() as (db, rbac):
        seed_roles(db, rbac)
        if settings.SEED_DEFAULT_PERMISSIONS:
            seed_permissions(db, rbac)
    typer.echo("✅ All seeds applied")


@rbac_app.command("assign-role")
def assign_role(
    user_id: int = typer.Argument(..., help="User ID"),
    role_slug: str = typer.Argument(..., help="Role slug, e.g. admin"),
):
    """Give a user a role."""
    with _rbac_session() as (db, rbac):
        role = rbac.get_role_by_slug(db, role_slug)
        rbac.assign_role(db, user_id, role.id)
    typer.echo(f"✅ User {user_id} has role '{role_slug}'")


@rbac_app.command("revoke-role")
def revoke_role(
    user_id: int = typer.Argument(..., help="User ID"),
    role_slug: str = typer.Argument(..., help="Role slug"),
):
    """Take a role away from a user."""
    with _rbac_session() as (db, rbac):
        role = rbac.get_role_by_slug(db, role_slug)
        rbac.remove_role(db, user_id, role.id)
    typer.echo(f"✅ Role '{role_slug}' removed from user {user_id}")


@rbac_app.command("grant")
def grant(
    user_id: int = typer.Argument(..., help="User ID"),
    permission_slug: str = typer.Argument(..., help="Permission slug, e.g. users.view"),
):
    """Grant a permission directly to a user."""
    with _rbac_session() as (db, rbac):
        permission = rbac.get_permission_by_slug(db, permission_slug)
        rbac.assign_permission(db, user_id, permission.id)
    typer.echo(f"✅ User {user_id} granted '{permission_slug}'")


@rbac_app.command("check")
def check(
    user_id: int = typer.Argument(..., help="User ID"),
    permission_slug: str = typer.Argument(..., help="Permission slug"),
):
    """Check a permission. Exits with code 1 when denied."""
    with _rbac_session() as (db, rbac):
        allowed = rbac.has_permission(db, user_id, permission_slug)
    if not allowed:
        typer.echo(f"❌ User {user_id} lacks '{permission_slug}'")
        raise typer.Exit(code=1)
    typer.echo(f"✅ User {user_id} has '{permission_slug}'")


@rbac_app.command("permissions")
def permissions(user_id: int = typer.Argument(..., help="User ID")):
    """List a user's roles and effective permissions."""
    from modcore.schemas.schemas import PermissionOut, RoleOut, UserPermissionsOut

    with _rbac_session() as (db, rbac):
        out = UserPermissionsOut(
            user_id=user_id,
            roles=[RoleOut.model_validate(r) for r in rbac.get_user_roles(db, user_id)],
            permissions=[
                PermissionOut.model_validate(p)
                for p in sorted(rbac.get_user_permissions(db, user_id), key=lambda p: p.slug)
            ],
        )
    typer.echo(f"User {out.user_id}")
    typer.echo("  Roles: " + (", ".join(r.slug for r in out.roles) or "-"))
    for p in out.permissions:
        typer.echo(f"  [{p.id}] {p.slug} ({p.module or '-'})")


@cache_app.command("stats")
def cache_stats():
    """Print hit/miss/key counters for the configured cache tiers."""
    from modcore.cache import build_cache
    from modcore.schemas.schemas import CacheStatsOut

    cache = build_cache(settings)
    try:
        stats = CacheStatsOut.model_validate(cache.stats())
    finally:
        cache.close()
    typer.echo(stats.model_dump_json(indent=2))


@cache_app.command("clear")
def cache_clear(yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation")):
    """Flush every cache tier (DANGER)."""
    if not yes and not typer.confirm("⚠️  This will flush every cache tier. Continue?"):
        raise typer.Abort()
    from modcore.cache import build_cache

    cache = build_cache(settings)
    try:
        cache.clear()
    except ModcoreError as e:
        typer.echo(f"❌ {e.message}", err=True)
        raise typer.Exit(code=2)
    finally:
        cache.close()
    typer.echo("✅ Cache cleared")


@app.command("serve")
def serve(
    host: str = typer.Option("0.0.0.0", help="Host"),
    port: int = typer.Option(8000, help="Port"),
    reload: bool = typer.Option(False, help="Auto-reload"),
):
    """Start the FastAPI server."""
    import uvicorn
    uvicorn.run("modcore.main:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    app()
