"""Declared tables of the task board.

This is the single authoritative column set. Columns that used to be patched
in by one-off scripts (``sessions.token``, ``tasks.board_id``,
``tasks.reporter_id``, ``projects.telegram_*``, ``project_members.joined_at``)
are declared here, and reconciliation adds them to older databases.
"""

from __future__ import annotations

from taskstore.schema import (
    NOW,
    ColumnDescriptor,
    ForeignKey,
    IndexDescriptor,
    SemanticType,
    TableDescriptor,
)

TEXT = SemanticType.TEXT
INTEGER = SemanticType.INTEGER
BOOLEAN = SemanticType.BOOLEAN
TIMESTAMP = SemanticType.TIMESTAMP
UUID = SemanticType.UUID
JSON = SemanticType.JSON


def _id() -> ColumnDescriptor:
    return ColumnDescriptor("id", UUID, nullable=False, primary_key=True)


def _ref(name: str, table: str, *, nullable: bool = False, on_delete: str = "CASCADE") -> ColumnDescriptor:
    return ColumnDescriptor(
        name,
        UUID,
        nullable=nullable,
        references=ForeignKey(table, "id", on_delete=on_delete),
    )


def _timestamps() -> tuple[ColumnDescriptor, ...]:
    return (
        ColumnDescriptor("created_at", TIMESTAMP, default=NOW),
        ColumnDescriptor("updated_at", TIMESTAMP, default=NOW),
    )


USERS = TableDescriptor(
    "users",
    (
        _id(),
        ColumnDescriptor("email", TEXT, nullable=False, unique=True),
        ColumnDescriptor("name", TEXT, nullable=False),
        ColumnDescriptor("password_hash", TEXT, nullable=False),
        ColumnDescriptor("role", TEXT, nullable=False, default="user"),
        ColumnDescriptor("approval_status", TEXT, nullable=False, default="pending"),
        ColumnDescriptor("avatar", TEXT),
        ColumnDescriptor("is_active", BOOLEAN, default=True),
        # Telegram ids (supergroups are -100...) overflow a 32-bit integer.
        ColumnDescriptor("telegram_chat_id", TEXT),
        ColumnDescriptor("telegram_username", TEXT),
        ColumnDescriptor(
            "notification_settings",
            JSON,
            default={
                "email": True,
                "telegram": False,
                "browser": True,
                "taskAssigned": True,
                "taskCompleted": True,
                "projectUpdates": True,
            },
        ),
        ColumnDescriptor("last_login_at", TIMESTAMP),
        *_timestamps(),
        ColumnDescriptor("deleted_at", TIMESTAMP),
    ),
    indexes=(
        IndexDescriptor("idx_users_email", ("email",)),
        IndexDescriptor("idx_users_active", ("is_active",)),
        IndexDescriptor("idx_users_role", ("role",)),
        IndexDescriptor("idx_users_approval_status", ("approval_status",)),
    ),
)

SESSIONS = TableDescriptor(
    "sessions",
    (
        _id(),
        _ref("user_id", "users"),
        ColumnDescriptor("token", TEXT, unique=True),
        ColumnDescriptor("expires_at", TIMESTAMP, nullable=False),
        ColumnDescriptor("is_active", BOOLEAN, default=True),
        ColumnDescriptor("user_agent", TEXT),
        ColumnDescriptor("ip_address", TEXT),
        ColumnDescriptor("last_activity_at", TIMESTAMP, default=NOW),
        *_timestamps(),
    ),
    indexes=(
        IndexDescriptor("idx_sessions_user", ("user_id",)),
        IndexDescriptor("idx_sessions_expires_at", ("expires_at",)),
    ),
)

PROJECTS = TableDescriptor(
    "projects",
    (
        _id(),
        ColumnDescriptor("name", TEXT, nullable=False),
        ColumnDescriptor("description", TEXT),
        ColumnDescriptor("color", TEXT, default="#3B82F6"),
        ColumnDescriptor("icon", TEXT),
        _ref("creator_id", "users"),
        ColumnDescriptor("visibility", TEXT, default="private"),
        ColumnDescriptor("telegram_chat_id", TEXT),
        ColumnDescriptor("telegram_topic_id", TEXT),
        ColumnDescriptor("is_archived", BOOLEAN, default=False),
        ColumnDescriptor("settings", JSON),
        *_timestamps(),
        ColumnDescriptor("deleted_at", TIMESTAMP),
    ),
    indexes=(
        IndexDescriptor("idx_projects_owner", ("creator_id",)),
        IndexDescriptor("idx_projects_archived", ("is_archived",)),
    ),
)

PROJECT_MEMBERS = TableDescriptor(
    "project_members",
    (
        _id(),
        _ref("project_id", "projects"),
        _ref("user_id", "users"),
        ColumnDescriptor("role", TEXT, nullable=False, default="member"),
        ColumnDescriptor("permissions", JSON),
        ColumnDescriptor("joined_at", TIMESTAMP, default=NOW),
        *_timestamps(),
    ),
    unique_together=(("project_id", "user_id"),),
    indexes=(
        IndexDescriptor("idx_project_members_project", ("project_id",)),
        IndexDescriptor("idx_project_members_user", ("user_id",)),
    ),
)

BOARDS = TableDescriptor(
    "boards",
    (
        _id(),
        ColumnDescriptor("name", TEXT, nullable=False),
        ColumnDescriptor("description", TEXT),
        _ref("project_id", "projects"),
        ColumnDescriptor("icon", TEXT),
        ColumnDescriptor("color", TEXT, default="#3b82f6"),
        ColumnDescriptor("visibility", TEXT, default="private"),
        ColumnDescriptor("is_default", BOOLEAN, default=False),
        ColumnDescriptor("position", INTEGER, default=0),
        ColumnDescriptor("is_archived", BOOLEAN, default=False),
        ColumnDescriptor("settings", JSON, default={}),
        _ref("created_by", "users", nullable=True, on_delete="SET NULL"),
        *_timestamps(),
    ),
    indexes=(
        IndexDescriptor("idx_boards_project", ("project_id",)),
        IndexDescriptor("idx_boards_position", ("project_id", "position")),
        IndexDescriptor("idx_boards_archived", ("is_archived",)),
    ),
)

COLUMNS = TableDescriptor(
    "columns",
    (
        _id(),
        ColumnDescriptor("name", TEXT, nullable=False),
        _ref("board_id", "boards"),
        ColumnDescriptor("position", INTEGER, nullable=False, default=0),
        ColumnDescriptor("color", TEXT, default="#6b7280"),
        ColumnDescriptor("wip_limit", INTEGER),
        ColumnDescriptor("is_collapsed", BOOLEAN, default=False),
        ColumnDescriptor("settings", JSON, default={}),
        *_timestamps(),
    ),
    indexes=(
        IndexDescriptor("idx_columns_board", ("board_id",)),
        IndexDescriptor("idx_columns_position", ("board_id", "position")),
    ),
)

TASKS = TableDescriptor(
    "tasks",
    (
        _id(),
        ColumnDescriptor("title", TEXT, nullable=False),
        ColumnDescriptor("description", TEXT),
        ColumnDescriptor("status", TEXT, nullable=False, default="todo"),
        ColumnDescriptor("priority", TEXT, nullable=False, default="medium"),
        _ref("column_id", "columns"),
        _ref("board_id", "boards", nullable=True),
        _ref("project_id", "projects", nullable=True),
        ColumnDescriptor("position", INTEGER, nullable=False, default=0),
        _ref("assignee_id", "users", nullable=True, on_delete="SET NULL"),
        _ref("reporter_id", "users", nullable=True, on_delete="SET NULL"),
        ColumnDescriptor("due_date", TIMESTAMP),
        ColumnDescriptor("estimated_hours", INTEGER),
        ColumnDescriptor("actual_hours", INTEGER),
        ColumnDescriptor("tags", JSON, default=[]),
        ColumnDescriptor("is_archived", BOOLEAN, default=False),
        ColumnDescriptor("metadata", JSON),
        *_timestamps(),
    ),
    indexes=(
        IndexDescriptor("idx_tasks_column", ("column_id",)),
        IndexDescriptor("idx_tasks_board", ("board_id",)),
        IndexDescriptor("idx_tasks_project", ("project_id",)),
        IndexDescriptor("idx_tasks_assignee", ("assignee_id",)),
        IndexDescriptor("idx_tasks_reporter", ("reporter_id",)),
        IndexDescriptor("idx_tasks_status", ("status",)),
        IndexDescriptor("idx_tasks_priority", ("priority",)),
        IndexDescriptor("idx_tasks_due_date", ("due_date",)),
        IndexDescriptor("idx_tasks_position", ("column_id", "position")),
        IndexDescriptor("idx_tasks_archived", ("is_archived",)),
    ),
)

TAGS = TableDescriptor(
    "tags",
    (
        _id(),
        ColumnDescriptor("name", TEXT, nullable=False),
        ColumnDescriptor("color", TEXT, default="#6b7280"),
        _ref("project_id", "projects", nullable=True),
        ColumnDescriptor("created_at", TIMESTAMP, default=NOW),
    ),
    unique_together=(("project_id", "name"),),
    indexes=(IndexDescriptor("idx_tags_project", ("project_id",)),),
)

TASK_TAGS = TableDescriptor(
    "task_tags",
    (
        _id(),
        _ref("task_id", "tasks"),
        _ref("tag_id", "tags"),
        ColumnDescriptor("created_at", TIMESTAMP, default=NOW),
    ),
    unique_together=(("task_id", "tag_id"),),
    indexes=(
        IndexDescriptor("idx_task_tags_task", ("task_id",)),
        IndexDescriptor("idx_task_tags_tag", ("tag_id",)),
    ),
)

TASK_ASSIGNEES = TableDescriptor(
    "task_assignees",
    (
        _id(),
        _ref("task_id", "tasks"),
        _ref("user_id", "users"),
        ColumnDescriptor("assigned_at", TIMESTAMP, default=NOW),
        _ref("assigned_by", "users", nullable=True, on_delete="SET NULL"),
    ),
    unique_together=(("task_id", "user_id"),),
    indexes=(
        IndexDescriptor("idx_task_assignees_task_id", ("task_id",)),
        IndexDescriptor("idx_task_assignees_user_id", ("user_id",)),
        IndexDescriptor("idx_task_assignees_assigned_by", ("assigned_by",)),
    ),
)

TASKBOARD_TABLES: tuple[TableDescriptor, ...] = (
    USERS,
    SESSIONS,
    PROJECTS,
    PROJECT_MEMBERS,
    BOARDS,
    COLUMNS,
    TASKS,
    TAGS,
    TASK_TAGS,
    TASK_ASSIGNEES,
)


__all__ = [
    "USERS",
    "SESSIONS",
    "PROJECTS",
    "PROJECT_MEMBERS",
    "BOARDS",
    "COLUMNS",
    "TASKS",
    "TAGS",
    "TASK_TAGS",
    "TASK_ASSIGNEES",
    "TASKBOARD_TABLES",
]
