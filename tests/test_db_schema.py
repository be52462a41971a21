"""Tests for database schema creation."""

from datetime import UTC, datetime
from pathlib import Path
import sys

import pytest
from sqlalchemy import inspect

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from approval_router import Base, config
from approval_router.db import get_engine, get_session_factory, session_scope
from approval_router.models import ApprovalRecord


@pytest.fixture(autouse=True)
def override_database(monkeypatch, tmp_path):
    test_db = tmp_path / "test.db"
    monkeypatch.setenv("SLACK_SIGNING_SECRET", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{test_db}")
    config.get_settings.cache_clear()
    get_engine.cache_clear()
    get_session_factory.cache_clear()
    yield
    config.get_settings.cache_clear()
    get_engine.cache_clear()
    get_session_factory.cache_clear()


def test_create_all_creates_expected_tables():
    engine = get_engine()
    Base.metadata.create_all(engine)

    inspector = inspect(engine)
    tables = inspector.get_table_names()
    assert {"approvals", "status_history", "slack_installations", "slack_messages"}.issubset(tables)

    approvals_columns = {column["name"] for column in inspector.get_columns("approvals")}
    assert approvals_columns.issuperset(
        {"approval_id", "tenant_id", "status", "payload_json", "expires_at", "decided_by", "outcome_ref", "version"}
    )

    message_columns = {column["name"] for column in inspector.get_columns("slack_messages")}
    assert message_columns.issuperset({"message_id", "team_id", "channel_id", "thread_ts", "response_ts"})


def test_timestamps_round_trip_as_utc():
    engine = get_engine()
    Base.metadata.create_all(engine)
    created = datetime(2024, 3, 1, 9, 30, tzinfo=UTC)

    with session_scope() as session:
        session.add(
            ApprovalRecord(
                approval_id="apr_tz",
                type="run",
                tenant_id="T1",
                title="Nightly run",
                created_at=created,
            )
        )

    with session_scope() as session:
        record = session.get(ApprovalRecord, "apr_tz")
        assert record.created_at == created
        assert record.created_at.tzinfo is not None
        assert record.status == "pending"
        assert record.priority == 5
