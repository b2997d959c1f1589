"""SQLAlchemy Core table definitions."""

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    false,
)

metadata = MetaData()


repositories = Table(
    "repositories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("github_id", BigInteger, nullable=False, unique=True),
    Column("full_name", String(255), nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("owner_login", String(255)),
    Column("description", Text),
    Column("url", String(512)),
    Column("stars", Integer, default=0),
    Column("forks", Integer, default=0),
    Column("language", String(64)),
    # Enrichment detail fields
    Column("open_issues", Integer),
    Column("watchers", Integer),
    Column("topics", JSON),
    Column("is_enriched", Boolean, nullable=False, default=False, server_default=false()),
    Column("enriched_at", DateTime(timezone=True)),
    Column("enrichment_attempts", Integer, nullable=False, default=0, server_default="0"),
    Column("updated_at", DateTime(timezone=True)),
)

contributors = Table(
    "contributors",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("github_id", BigInteger, nullable=False, unique=True),
    Column("login", String(255), nullable=False, index=True),
    Column("avatar_url", String(512)),
    Column("html_url", String(512)),
    Column("name", String(255)),
    Column("company", String(255)),
    Column("location", String(255)),
    Column("bio", Text),
    Column("followers", Integer),
    Column("public_repos", Integer),
    Column("is_enriched", Boolean, nullable=False, default=False, server_default=false()),
    Column("enriched_at", DateTime(timezone=True)),
    Column("enrichment_attempts", Integer, nullable=False, default=0, server_default="0"),
    Column("updated_at", DateTime(timezone=True)),
)

merge_requests = Table(
    "merge_requests",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("github_id", BigInteger, nullable=False, unique=True),
    Column("repository_full_name", String(255), nullable=False, index=True),
    Column("number", Integer, nullable=False),
    Column("title", Text),
    Column("state", String(32)),
    Column("author_login", String(255)),
    Column("author_id", BigInteger),
    Column("created_at", String(64)),
    Column("closed_at", String(64)),
    Column("merged_at", String(64)),
    Column("additions", Integer),
    Column("deletions", Integer),
    Column("changed_files", Integer),
    Column("commits_count", Integer),
    Column("is_enriched", Boolean, nullable=False, default=False, server_default=false()),
    Column("enriched_at", DateTime(timezone=True)),
    Column("enrichment_attempts", Integer, nullable=False, default=0, server_default="0"),
    Column("updated_at", DateTime(timezone=True)),
)

commits = Table(
    "commits",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("sha", String(64), nullable=False),
    Column("repository_full_name", String(255), nullable=False),
    Column("message", Text),
    Column("author_login", String(255)),
    Column("committed_at", String(64)),
    Column("additions", Integer),
    Column("deletions", Integer),
    Column("is_enriched", Boolean, nullable=False, default=False, server_default=false()),
    Column("enriched_at", DateTime(timezone=True)),
    Column("enrichment_attempts", Integer, nullable=False, default=0, server_default="0"),
    Column("updated_at", DateTime(timezone=True)),
    UniqueConstraint("repository_full_name", "sha", name="uq_commits_repository_sha"),
)

github_raw_data = Table(
    "github_raw_data",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("entity_type", String(64), nullable=False),
    Column("github_id", String(255), nullable=False),
    Column("data", JSON, nullable=False),
    Column("api_endpoint", String(512)),
    Column("etag", String(255)),
    Column("fetched_at", DateTime(timezone=True)),
    UniqueConstraint("entity_type", "github_id", name="uq_raw_entity"),
)

pipeline_schedules = Table(
    "pipeline_schedules",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("description", Text),
    Column("pipeline_type", String(64), nullable=False, index=True),
    Column("cron_expression", String(128), nullable=False),
    Column("time_zone", String(64), nullable=False, default="UTC"),
    Column("parameters", JSON),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("is_running", Boolean, nullable=False, default=False),
    Column("last_run_at", DateTime(timezone=True)),
    Column("next_run_at", DateTime(timezone=True)),
    Column("last_result", JSON),
    Column("created_at", DateTime(timezone=True)),
    Column("updated_at", DateTime(timezone=True)),
)

pipeline_history = Table(
    "pipeline_history",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("pipeline_type", String(64), nullable=False, index=True),
    Column("schedule_id", String(36)),
    Column("run_id", String(64)),
    Column("started_at", DateTime(timezone=True), nullable=False),
    Column("completed_at", DateTime(timezone=True)),
    Column("status", String(16), nullable=False, default="running"),
    Column("items_processed", Integer, default=0),
    Column("error_message", Text),
)


# Natural (upstream) keys used for idempotent upserts
NATURAL_KEYS = {
    "repositories": ("github_id",),
    "contributors": ("github_id",),
    "merge_requests": ("github_id",),
    "commits": ("repository_full_name", "sha"),
    "github_raw_data": ("entity_type", "github_id"),
    "pipeline_schedules": ("id",),
}

ENTITY_TABLES = {
    "repository": repositories,
    "contributor": contributors,
    "merge_request": merge_requests,
    "commit": commits,
}
