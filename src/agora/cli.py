"""CLI for agora administration.

Configuration lives in ~/.config/agora/config.yaml (or $AGORA_CONFIG) and
can be overridden per process with AGORA_* environment variables.

The CLI runs the server and the maintenance jobs that reap expired
connection leases, invites and sessions.
"""

from __future__ import annotations

import json
import logging
import sys

import cyclopts

from .config import AgoraConfigError, Settings, get_config_path, load_settings, save_settings

app = cyclopts.App(
    name="agora",
    help="Chat backend with real-time fan-out",
)

config_app = cyclopts.App(name="config", help="Configuration management")
jobs_app = cyclopts.App(name="jobs", help="Scheduled job operations")

app.command(config_app)
app.command(jobs_app)


def print_json(data):
    """Pretty print JSON data."""
    print(json.dumps(data, indent=2, default=str))


def _load_or_exit() -> Settings:
    try:
        return load_settings()
    except AgoraConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        raise SystemExit(1)


# --- Config Commands ---


@config_app.command(name="show")
def config_show():
    """Show the effective configuration, environment overrides included."""
    settings = _load_or_exit()
    print(f"# {get_config_path()}")
    print_json(settings.to_dict())


@config_app.command(name="init")
def config_init(
    *,
    db_path: str = "agora.db",
    registry: str = "memory",
    push_endpoint: str | None = None,
    force: bool = False,
):
    """Write a config file.

    --db-path: SQLite file (or libsql:// URL)
    --registry: Connection registry backend (memory or database)
    --push-endpoint: External push gateway base URL
    --force: Overwrite an existing config file
    """
    path = get_config_path()
    if path.exists() and not force:
        print(f"Config already exists at {path} (use --force to overwrite)", file=sys.stderr)
        sys.exit(1)

    try:
        settings = Settings(db_path=db_path, registry_backend=registry, push_endpoint=push_endpoint)
    except AgoraConfigError as e:
        raise cyclopts.ValidationError(str(e))

    saved = save_settings(settings, path)
    print(f"Wrote {saved}")


# --- Database Commands ---


@app.command(name="init-db")
def init_db():
    """Create the database schema (idempotent)."""
    from . import db

    settings = _load_or_exit()
    db.init_db()
    print(f"Initialized database at {settings.db_path}")


# --- Jobs Commands ---


@jobs_app.command(name="reap")
def jobs_reap(*, dry_run: bool = False):
    """Delete connection records whose lease has expired.

    --dry-run: Count expired records without deleting them
    """
    from . import db, jobs

    _load_or_exit()
    db.init_db()

    count = jobs.reap_expired_connections(dry_run=dry_run)
    if dry_run:
        print(f"Would reap {count} expired connections")
    else:
        print(f"Reaped {count} expired connections")


@jobs_app.command(name="invites")
def jobs_invites():
    """Delete invites past their expiry."""
    from . import db, jobs

    _load_or_exit()
    db.init_db()
    print(f"Deleted {jobs.cleanup_expired_invites()} expired invites")


@jobs_app.command(name="sessions")
def jobs_sessions():
    """Delete expired login sessions."""
    from . import db, jobs

    _load_or_exit()
    db.init_db()
    print(f"Deleted {jobs.cleanup_expired_sessions()} expired sessions")


# --- Server Command ---


@app.command
def serve(
    *,
    host: str = "0.0.0.0",
    port: int = 8000,
    reload: bool = False,
    log_level: str = "info",
):
    """Run the agora server.

    Authentication uses session tokens issued by /auth/register and
    /auth/login. Set AGORA_AUTH_MODULE to plug in an external verifier.
    """
    import uvicorn

    settings = _load_or_exit()
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    print(f"Database: {settings.db_path}")
    print(f"Connection registry: {settings.registry_backend}")
    if settings.push_endpoint:
        print(f"Push endpoint: {settings.push_endpoint}")

    uvicorn.run(
        "agora.api:app",
        host=host,
        port=port,
        reload=reload,
        log_level=log_level,
    )


if __name__ == "__main__":
    app()
