"""
Startup dependency checks for the TutorChat backend.

Validates critical dependencies before the API or the job worker start.
Fails fast with clear, actionable error messages when requirements aren't met.
"""

import sys
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import inspect, text

from tutorchat.config import settings
from tutorchat.db.connection import SessionLocal, engine


@dataclass
class StartupMetrics:
    """Metrics collected during startup checks."""

    started_at: datetime
    completed_at: Optional[datetime] = None
    total_duration_ms: Optional[float] = None
    database_check_ms: Optional[float] = None
    schema_check_ms: Optional[float] = None
    llm_check_ms: Optional[float] = None
    vector_check_ms: Optional[float] = None
    event_bus_check_ms: Optional[float] = None
    log_dir_check_ms: Optional[float] = None
    checks_passed: bool = False
    last_check_time: Optional[datetime] = None


# Global startup metrics (populated during startup)
startup_metrics = StartupMetrics(started_at=datetime.now(timezone.utc))

REQUIRED_TABLES = (
    "chat_thread",
    "chat_message",
    "chat_turn",
    "chat_thread_state",
    "chat_doc",
    "chat_summary_node",
    "job_run",
)


class StartupCheckError(Exception):
    """Raised when a critical startup check fails."""

    def __init__(self, message: str, hint: Optional[str] = None):
        self.message = message
        self.hint = hint
        super().__init__(message)

    def __str__(self) -> str:
        error_msg = f"\n{'='*70}\n❌ STARTUP CHECK FAILED\n{'='*70}\n\n{self.message}\n"
        if self.hint:
            error_msg += f"\n💡 Hint: {self.hint}\n"
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
                "  - Start with Docker: docker compose up -d postgres"
            )
        elif "authentication failed" in error_str or "password" in error_str:
            hint = (
                "Database authentication failed.\n"
                "  - Check credentials in .env file\n"
                f"  - Current user: {settings.postgres_user}"
            )
        elif "timeout" in error_str or "timed out" in error_str:
            hint = (
                "Database connection timed out.\n"
                f"  - Current host: {settings.postgres_host}:{settings.postgres_port}"
            )
        else:
            hint = f"Check your database configuration in .env\nError: {str(e)}"

        raise StartupCheckError(
            f"Cannot connect to database\n"
            f"Host: {settings.postgres_host}:{settings.postgres_port}\n"
            f"Database: {settings.postgres_db}",
            hint,
        ) from e


def check_database_schema() -> None:
    """
    Verify the chat tables exist.

    Raises:
        StartupCheckError: If required tables are missing
    """
    existing = set(inspect(engine).get_table_names())
    missing = [name for name in REQUIRED_TABLES if name not in existing]
    if missing:
        raise StartupCheckError(
            "Database schema is incomplete. Missing tables:\n"
            + "\n".join(f"  - {name}" for name in missing),
            "Create the schema: tutorchat init-db",
        )


def check_llm_configuration() -> None:
    """
    Validate the configured LLM provider has credentials.

    Raises:
        StartupCheckError: If the provider is unknown or its API key is missing
    """
    provider = settings.llm_provider.lower()
    if provider == "openai":
        if not settings.openai_api_key:
            raise StartupCheckError(
                "OPENAI_API_KEY is not set",
                "Set OPENAI_API_KEY in your .env file",
            )
    elif provider == "anthropic":
        if not settings.anthropic_api_key:
            raise StartupCheckError(
                "ANTHROPIC_API_KEY is not set",
                "Set ANTHROPIC_API_KEY in your .env file",
            )
        if not settings.openai_api_key:
            raise StartupCheckError(
                "Embeddings require OPENAI_API_KEY when LLM_PROVIDER=anthropic",
                "Set OPENAI_API_KEY for the embedding model",
            )
    else:
        raise StartupCheckError(
            f"Unknown LLM provider: {settings.llm_provider}",
            "Set LLM_PROVIDER to 'openai' or 'anthropic'",
        )


def check_vector_configuration() -> None:
    """
    Validate vector store settings.

    Raises:
        StartupCheckError: If the Pinecone backend is selected without credentials
    """
    backend = settings.vector_backend.lower()
    if backend == "memory":
        return
    if backend != "pinecone":
        raise StartupCheckError(
            f"Unknown vector backend: {settings.vector_backend}",
            "Set VECTOR_BACKEND to 'memory' or 'pinecone'",
        )
    if not settings.pinecone_api_key or not settings.pinecone_index_host:
        raise StartupCheckError(
            "Pinecone backend selected but PINECONE_API_KEY or PINECONE_INDEX_HOST is missing",
            "Set both variables or use VECTOR_BACKEND=memory",
        )


def check_event_bus() -> None:
    """
    Ping Redis when the SSE bus is configured.

    Raises:
        StartupCheckError: If REDIS_URL is set but Redis cannot be reached
    """
    if not settings.redis_url:
        return

    from redis.exceptions import RedisError

    from tutorchat.sse.bus import RedisEventBus

    try:
        bus = RedisEventBus(settings.redis_url)
        bus.ping()
        bus.close()
    except (RedisError, ValueError) as e:
        raise StartupCheckError(
            f"Cannot reach Redis for the SSE bus\nError: {str(e)}",
            "Start Redis or unset REDIS_URL to use the in-process hub",
        ) from e


def check_log_directory() -> None:
    """
    Validate the log directory exists and is writable.

    Raises:
        StartupCheckError: If the log directory cannot be created or written
    """
    if not settings.log_file_enabled:
        return

    log_dir = settings.log_directory
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        test_file = log_dir / ".write_test"
        test_file.write_text("test")
        test_file.unlink()
    except OSError as e:
        raise StartupCheckError(
            f"Log directory is not writable: {log_dir}\nError: {str(e)}",
            f"Create it manually: mkdir -p {log_dir}\n  Or set LOG_DIR",
        ) from e


def run_all_startup_checks() -> None:
    """
    Execute all startup dependency checks.

    Runs checks in order of dependency:
    1. Database connection
    2. Database schema
    3. LLM provider configuration
    4. Vector store configuration
    5. Log directory

    Raises:
        SystemExit: After printing the failed check
    """
    global startup_metrics
    startup_start = time.time()

    checks = [
        ("Database Connection", check_database_connection, "database_check_ms"),
        ("Database Schema", check_database_schema, "schema_check_ms"),
        ("LLM Configuration", check_llm_configuration, "llm_check_ms"),
        ("Vector Store", check_vector_configuration, "vector_check_ms"),
        ("Event Bus", check_event_bus, "event_bus_check_ms"),
        ("Log Directory", check_log_directory, "log_dir_check_ms"),
    ]

    print("\n" + "=" * 70)
    print("🚀 Starting TutorChat Backend - Running Startup Checks")
    print("=" * 70 + "\n")

    for check_name, check_func, metric_name in checks:
        check_start = time.time()
        try:
            print(f"  Checking {check_name}...", end=" ", flush=True)
            check_func()
            check_duration = (time.time() - check_start) * 1000
            setattr(startup_metrics, metric_name, check_duration)
            print(f"✅ PASS ({check_duration:.1f}ms)")
        except StartupCheckError as e:
            check_duration = (time.time() - check_start) * 1000
            setattr(startup_metrics, metric_name, check_duration)
            print(f"❌ FAIL ({check_duration:.1f}ms)")
            print(str(e))
            sys.exit(1)

    startup_metrics.completed_at = datetime.now(timezone.utc)
    startup_metrics.total_duration_ms = (time.time() - startup_start) * 1000
    startup_metrics.checks_passed = True
    startup_metrics.last_check_time = datetime.now(timezone.utc)

    print("\n" + "=" * 70)
    print(
        f"✅ All startup checks passed - Server is ready ({startup_metrics.total_duration_ms:.1f}ms)"
    )
    print("=" * 70 + "\n")


def check_readiness() -> tuple[bool, dict]:
    """
    Quick readiness check for load balancer probes.

    Returns:
        tuple: (is_ready, details) where details contains the database status,
            whether startup completed, uptime and startup timings
    """
    db_ready = False
    try:
        with SessionLocal() as session:
            session.execute(text("SELECT 1"))
            db_ready = True
    except Exception:
        db_ready = False

    uptime = (datetime.now(timezone.utc) - startup_metrics.started_at).total_seconds()

    ready = startup_metrics.checks_passed and db_ready
    details = {
        "ready": ready,
        "database": "healthy" if db_ready else "unhealthy",
        "startup_completed": startup_metrics.checks_passed,
        "uptime_seconds": uptime,
        "startup_metrics": {
            "total_duration_ms": startup_metrics.total_duration_ms,
            "database_check_ms": startup_metrics.database_check_ms,
            "schema_check_ms": startup_metrics.schema_check_ms,
            "started_at": startup_metrics.started_at.isoformat(),
            "completed_at": (
                startup_metrics.completed_at.isoformat()
                if startup_metrics.completed_at
                else None
            ),
        },
    }

    return ready, details
