"""Tests for ``taskstore.schema`` and the declared task-board tables."""

from __future__ import annotations

import pytest

from taskstore.schema import (
    NOW,
    ColumnDescriptor,
    ForeignKey,
    IndexDescriptor,
    MigrationRecord,
    SemanticType,
    TableDescriptor,
)
from taskstore.tables import SESSIONS, TASKBOARD_TABLES, TASKS


class TestColumnDescriptor:
    def test_required(self) -> None:
        assert ColumnDescriptor("a", SemanticType.TEXT, nullable=False).required
        assert ColumnDescriptor("id", SemanticType.UUID, primary_key=True).required
        assert not ColumnDescriptor("a", SemanticType.TEXT).required

    def test_defaults(self) -> None:
        now = ColumnDescriptor("created_at", SemanticType.TIMESTAMP, default=NOW)
        const = ColumnDescriptor("role", SemanticType.TEXT, default="user")
        false = ColumnDescriptor("flag", SemanticType.BOOLEAN, default=False)
        assert now.has_default and not now.has_constant_default
        assert const.has_constant_default
        assert false.has_constant_default
        assert not ColumnDescriptor("x", SemanticType.TEXT).has_default

    def test_now_repr(self) -> None:
        assert repr(NOW) == "NOW"


class TestTableDescriptor:
    def test_duplicate_column(self) -> None:
        col = ColumnDescriptor("a", SemanticType.TEXT)
        with pytest.raises(ValueError, match="Duplicate column"):
            TableDescriptor("t", (col, col))

    def test_unknown_unique_column(self) -> None:
        with pytest.raises(ValueError, match="unknown column"):
            TableDescriptor("t", (ColumnDescriptor("a", SemanticType.TEXT),), unique_together=(("a", "b"),))

    def test_unknown_index_column(self) -> None:
        with pytest.raises(ValueError, match="unknown column"):
            TableDescriptor(
                "t",
                (ColumnDescriptor("a", SemanticType.TEXT),),
                indexes=(IndexDescriptor("idx_t_b", ("b",)),),
            )

    def test_references_exclude_self(self) -> None:
        table = TableDescriptor(
            "tasks",
            (
                ColumnDescriptor("id", SemanticType.UUID, primary_key=True),
                ColumnDescriptor("parent_id", SemanticType.UUID, references=ForeignKey("tasks")),
                ColumnDescriptor("board_id", SemanticType.UUID, references=ForeignKey("boards")),
            ),
        )
        assert table.references == {"boards"}

    def test_column_lookup(self) -> None:
        assert SESSIONS.column("token").type is SemanticType.TEXT
        with pytest.raises(KeyError):
            SESSIONS.column("missing")

    def test_migration_record(self) -> None:
        record = MigrationRecord("sessions", SESSIONS.column("token"))
        assert record.column_name == "token"


class TestTaskboardTables:
    def test_table_names(self) -> None:
        assert [t.name for t in TASKBOARD_TABLES] == [
            "users",
            "sessions",
            "projects",
            "project_members",
            "boards",
            "columns",
            "tasks",
            "tags",
            "task_tags",
            "task_assignees",
        ]

    @pytest.mark.parametrize(
        ("table", "column"),
        [
            ("users", "password_hash"),
            ("users", "telegram_chat_id"),
            ("users", "telegram_username"),
            ("sessions", "token"),
            ("projects", "telegram_chat_id"),
            ("projects", "telegram_topic_id"),
            ("project_members", "joined_at"),
            ("tasks", "board_id"),
            ("tasks", "reporter_id"),
        ],
    )
    def test_late_columns_declared(self, table: str, column: str) -> None:
        by_name = {t.name: t for t in TASKBOARD_TABLES}
        assert column in by_name[table].column_names

    @pytest.mark.parametrize(
        ("table", "column"),
        [("users", "telegram_chat_id"), ("projects", "telegram_chat_id"), ("projects", "telegram_topic_id")],
    )
    def test_telegram_ids_are_text(self, table: str, column: str) -> None:
        by_name = {t.name: t for t in TASKBOARD_TABLES}
        assert by_name[table].column(column).type is SemanticType.TEXT

    def test_session_token_nullable(self) -> None:
        token = SESSIONS.column("token")
        assert token.nullable
        assert token.unique

    def test_tasks_reference_targets_are_declared(self) -> None:
        names = {t.name for t in TASKBOARD_TABLES}
        assert TASKS.references <= names
