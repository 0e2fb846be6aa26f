"""PermGate CLI tool (permgate)."""

import json
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import typer

app = typer.Typer(name="permgate", help="PermGate authorization engine CLI")
db_app = typer.Typer(help="Database management commands")
hierarchy_app = typer.Typer(help="Role hierarchy commands")
app.add_typer(db_app, name="db")
app.add_typer(hierarchy_app, name="hierarchy")


def _load_hierarchy(path: Path) -> dict:
    """Read a hierarchy from JSON: a bare mapping, or a config file with role_hierarchy."""
    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict) and isinstance(data.get("role_hierarchy"), dict):
        return data["role_hierarchy"]
    if isinstance(data, dict) and isinstance(data.get("roles"), dict):
        return data["roles"]
    return data


def _build_gate():
    from permgate.core.config import settings
    from permgate.db.session import SessionLocal
    from permgate.services.gate import PermissionGate

    return PermissionGate.from_settings(settings, SessionLocal)


@db_app.command("init")
def db_init():
    """Create the permission tables if they don't exist."""
    from permgate.db.session import init_db

    init_db()
    typer.echo("Tables created (or already exist)")


@db_app.command("seed")
def db_seed():
    """Seed default permissions and role assignments."""
    from permgate.db.session import SessionLocal
    from permgate.db.seeds.seed_roles import seed_roles

    db = SessionLocal()
    try:
        seed_roles(db)
    finally:
        db.close()
    typer.echo("Default permissions seeded")


@hierarchy_app.command("validate")
def hierarchy_validate(
    file: Path = typer.Argument(..., exists=True, readable=True, help="JSON hierarchy file"),
):
    """Check a hierarchy file for cycles, level ordering and root problems."""
    from permgate.core.exceptions import ConfigurationError
    from permgate.services.gate import coerce_hierarchy
    from permgate.services.hierarchy_service import hierarchy_errors

    try:
        errors = hierarchy_errors(coerce_hierarchy(_load_hierarchy(file)))
    except ConfigurationError as e:
        errors = e.errors
    except json.JSONDecodeError as e:
        errors = [f"Invalid JSON: {e}"]

    if errors:
        for error in errors:
            typer.echo(f"  - {error}", err=True)
        typer.echo(f"Hierarchy in {file} is invalid", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Hierarchy in {file} is valid")


@hierarchy_app.command("show")
def hierarchy_show(
    file: Path = typer.Argument(..., exists=True, readable=True, help="JSON hierarchy file"),
):
    """Build the hierarchy against the database and print the role tree."""
    gate = _build_gate()
    gate.rebuild_hierarchy(_load_hierarchy(file))

    def show(node, depth: int = 0):
        inherited = gate.inherited_permissions(node.role)
        typer.echo(f"{'  ' * depth}{node.role} (level {node.level}, {len(inherited)} permissions)")
        for child in node.children:
            show(child, depth + 1)

    show(gate.hierarchy.tree)


@app.command("grant")
def grant(
    user_id: str = typer.Argument(..., help="User to grant to"),
    permission: str = typer.Argument(..., help="Permission name"),
    expires_at: Optional[datetime] = typer.Option(None, help="Expiry (ISO 8601)"),
):
    """Grant a permission to a user."""
    gate = _build_gate()
    gate.grants.grant("cli", user_id, permission, expires_at)
    typer.echo(f"Granted {permission} to {user_id}")


@app.command("revoke")
def revoke(
    user_id: str = typer.Argument(..., help="User to revoke from"),
    permission: str = typer.Argument(..., help="Permission name"),
):
    """Revoke a permission from a user."""
    gate = _build_gate()
    revoked = gate.grants.revoke("cli", user_id, permission)
    typer.echo(f"Revoked {revoked} grant(s) of {permission} from {user_id}")


@app.command("check")
def check(
    user_id: str = typer.Argument(..., help="User id"),
    route: str = typer.Argument(..., help="Route pattern, e.g. /reports"),
    method: str = typer.Argument("GET", help="HTTP method"),
    require: List[str] = typer.Option([], "--require", "-r", help="Required permission name"),
    any_of: bool = typer.Option(False, "--any", help="Require any (OR) instead of all (AND)"),
):
    """Evaluate an authorization decision and print it as JSON."""
    from permgate.schemas.schemas import CombineStrategy

    gate = _build_gate()
    gate.initialize()
    strategy = CombineStrategy.OR if any_of else CombineStrategy.AND
    decision = gate.authorize(route, method, user_id, require or None, strategy if require else None)
    typer.echo(decision.model_dump_json(indent=2))
    if not decision.allowed:
        raise typer.Exit(code=2)


@app.command("serve")
def serve(
    host: str = typer.Option("0.0.0.0", help="Host"),
    port: int = typer.Option(8000, help="Port"),
    reload: bool = typer.Option(False, help="Auto-reload"),
):
    """Start the FastAPI server."""
    import uvicorn
    uvicorn.run("permgate.main:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    app()
