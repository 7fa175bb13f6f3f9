"""
Startup dependency checks for the Threadline API.

Validates the database and the media directory before the application
starts accepting webhooks. Fails fast with actionable error messages.
"""

import sys
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from alembic.config import Config as AlembicConfig
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import text

from threadline.config import settings
from threadline.db.connection import SessionLocal, engine


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class StartupMetrics:
    """Metrics collected during startup checks."""

    started_at: datetime
    completed_at: Optional[datetime] = None
    total_duration_ms: Optional[float] = None
    database_check_ms: Optional[float] = None
    migrations_check_ms: Optional[float] = None
    media_check_ms: Optional[float] = None
    checks_passed: bool = False


# Global startup metrics (populated during startup)
startup_metrics = StartupMetrics(started_at=_utcnow())


class StartupCheckError(Exception):
    """Raised when a critical startup check fails."""

    def __init__(self, message: str, hint: Optional[str] = None):
        self.message = message
        self.hint = hint
        super().__init__(message)

    def __str__(self) -> str:
        error_msg = f"\n{'='*70}\nSTARTUP CHECK FAILED\n{'='*70}\n\n{self.message}\n"
        if self.hint:
            error_msg += f"\nHint: {self.hint}\n"
        error_msg += f"{'='*70}\n"
        return error_msg


def check_database_connection() -> None:
    """
    Verify the database is accessible and responsive.

    Raises:
        StartupCheckError: If database connection fails
    """
    try:
        with SessionLocal() as session:
            result = session.execute(text("SELECT 1")).scalar()
            if result != 1:
                raise StartupCheckError(
                    "Database query returned unexpected result",
                    "Database may be corrupted or misconfigured",
                )
    except StartupCheckError:
        raise
    except Exception as e:
        error_str = str(e).lower()

        if "could not connect" in error_str or "connection refused" in error_str:
            hint = (
                "PostgreSQL is not running.\n"
                "  - Start it locally or point DATABASE_URL at a reachable server"
            )
        elif "authentication failed" in error_str or "password" in error_str:
            hint = (
                "Database authentication failed.\n"
                "  - Check credentials in .env file\n"
                f"  - Current user: {settings.postgres_user}"
            )
        elif "does not exist" in error_str:
            hint = (
                f"Database '{settings.postgres_db}' does not exist.\n"
                f"  - Create it: createdb {settings.postgres_db}"
            )
        else:
            hint = f"Check your database configuration in .env\nError: {str(e)}"

        raise StartupCheckError("Cannot connect to the database", hint) from e


def check_database_migrations() -> None:
    """
    Verify Alembic migrations are current.

    SQLite databases are created with ``threadline init-db`` and are not
    versioned, so the check only applies to PostgreSQL.

    Raises:
        StartupCheckError: If the schema is missing or behind
    """
    if engine.dialect.name != "postgresql":
        return

    try:
        script = ScriptDirectory.from_config(AlembicConfig("alembic.ini"))
        head_revision = script.get_current_head()

        with engine.connect() as connection:
            current_revision = MigrationContext.configure(
                connection
            ).get_current_revision()

        if current_revision is None:
            raise StartupCheckError(
                "Database has no migration version\nDatabase appears uninitialized",
                "Run migrations: alembic upgrade head",
            )
        if current_revision != head_revision:
            raise StartupCheckError(
                f"Database migrations are out of date\n"
                f"Current revision: {current_revision}\n"
                f"Expected revision: {head_revision}",
                "Run: alembic upgrade head",
            )
    except StartupCheckError:
        raise
    except Exception as e:
        raise StartupCheckError(
            f"Failed to check migration status: {str(e)}",
            "Ensure alembic.ini exists in the working directory",
        ) from e


def check_media_directory(directory: Optional[Path] = None) -> None:
    """
    Verify the media directory exists (creating it) and is writable.

    Raises:
        StartupCheckError: If the directory cannot be created or written
    """
    media_dir = Path(directory) if directory is not None else settings.media_directory

    try:
        media_dir.mkdir(parents=True, exist_ok=True)
        test_file = media_dir / ".write_test"
        test_file.write_text("test")
        test_file.unlink()
    except PermissionError as e:
        raise StartupCheckError(
            f"Media directory is not writable: {media_dir}\n"
            f"Permission denied: {str(e)}",
            f"Fix permissions: chmod u+w {media_dir}",
        ) from e
    except OSError as e:
        raise StartupCheckError(
            f"Failed to prepare media directory: {media_dir}\nError: {str(e)}",
            "Check MEDIA_DIR and parent directory permissions",
        ) from e


def run_all_startup_checks() -> None:
    """
    Execute all startup dependency checks, in dependency order.

    Raises:
        SystemExit: After printing the failed check
    """
    startup_start = time.time()

    checks = [
        ("Database Connection", check_database_connection, "database_check_ms"),
        ("Database Migrations", check_database_migrations, "migrations_check_ms"),
        ("Media Directory", check_media_directory, "media_check_ms"),
    ]

    print("\n" + "=" * 70)
    print("Starting Threadline - Running Startup Checks")
    print("=" * 70 + "\n")

    for check_name, check_func, metric_name in checks:
        print(f"  Checking {check_name}...", end=" ", flush=True)
        check_start = time.time()
        try:
            check_func()
        except StartupCheckError as e:
            setattr(startup_metrics, metric_name, (time.time() - check_start) * 1000)
            print("FAIL")
            print(str(e))
            sys.exit(1)
        check_duration = (time.time() - check_start) * 1000
        setattr(startup_metrics, metric_name, check_duration)
        print(f"PASS ({check_duration:.1f}ms)")

    startup_metrics.completed_at = _utcnow()
    startup_metrics.total_duration_ms = (time.time() - startup_start) * 1000
    startup_metrics.checks_passed = True

    print("\n" + "=" * 70)
    print(f"All startup checks passed ({startup_metrics.total_duration_ms:.1f}ms)")
    print("=" * 70 + "\n")
