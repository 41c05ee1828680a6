"""
Tests for the audit trail and its DataFrame/CSV reporting
"""

import pandas as pd
import pytest
from pydantic import ValidationError as PydanticValidationError

from promotion_engine.audit import (
    InMemoryAuditSink,
    audit_frame,
    export_audit_csv,
    summarize_usage,
    usage_frame,
)
from promotion_engine.exceptions import InfrastructureError
from promotion_engine.models import CampaignAudit, CampaignUsage, Money
from promotion_engine.storage import CampaignAuditRecord, SqlAuditSink, create_storage_engine, init_schema


@pytest.fixture
def usage_rows(now):
    return [
        CampaignUsage(id="u1", campaign_id="camp-a", customer_id="c1", order_id="o1",
                      discount_amount=Money(amount=2000), applied_at=now),
        CampaignUsage(id="u2", campaign_id="camp-a", customer_id="c2", order_id="o2",
                      discount_amount=Money(amount=1500), applied_at=now),
        CampaignUsage(id="u3", campaign_id="coupon-1", coupon_code="SAVE500", customer_id="c1",
                      discount_amount=Money(amount=500), applied_at=now),
    ]


@pytest.fixture
def audit_rows(now):
    return [
        CampaignAudit(id="a1", campaign_id="camp-a", customer_id="c1", action="applied",
                      details={"amount": 2000}, timestamp=now),
        CampaignAudit(id="a2", campaign_id="camp-c", customer_id="c1", action="conflict_resolved",
                      details={"reason": "conflict_resolved", "blockedBy": "camp-a"}, timestamp=now),
    ]


def test_in_memory_sink_appends(usage_rows, audit_rows):
    sink = InMemoryAuditSink()
    sink.write_usage(usage_rows[:1])
    sink.write_usage(usage_rows[1:])
    sink.write_audit(audit_rows)

    assert [row.id for row in sink.usage_rows] == ["u1", "u2", "u3"]
    assert [row.id for row in sink.audit_rows] == ["a1", "a2"]

    snapshot = sink.usage_rows
    snapshot.clear()
    assert len(sink.usage_rows) == 3, "Callers get a copy of the rows"


def test_rows_are_immutable(usage_rows):
    with pytest.raises(PydanticValidationError):
        usage_rows[0].campaign_id = "other"


def test_audit_frame(audit_rows):
    frame = audit_frame(audit_rows)
    assert list(frame['action']) == ["applied", "conflict_resolved"]
    assert list(frame['reason']) == ["", "conflict_resolved"]


def test_usage_summary(usage_rows):
    summary = summarize_usage(usage_rows).set_index('campaign_id')

    assert summary.loc["camp-a", "applications"] == 2
    assert summary.loc["camp-a", "total_discount"] == 3500
    assert summary.loc["coupon-1", "total_discount"] == 500
    assert summary.loc["camp-a", "unique_customers"] == 2
    assert summary.loc["camp-a", "average_discount"] == 1750
    assert summary.loc["coupon-1", "unique_customers"] == 1


def test_empty_summary():
    summary = summarize_usage([])
    assert summary.empty
    assert list(summary.columns) == [
        'campaign_id', 'applications', 'total_discount', 'unique_customers', 'average_discount',
    ]


def test_export_audit_csv(tmp_path, audit_rows):
    output = export_audit_csv(audit_rows, tmp_path / "reports" / "audit.csv")

    exported = pd.read_csv(output)
    assert list(exported['campaign_id']) == ["camp-a", "camp-c"]


def test_sql_sink_round_trip(tmp_path, usage_rows, audit_rows):
    engine = create_storage_engine(f"sqlite:///{tmp_path / 'audit.db'}")
    init_schema(engine)
    sink = SqlAuditSink(engine)

    sink.write_usage(usage_rows)
    sink.write_audit(audit_rows)

    frame = usage_frame(sink.usage_rows)
    assert sorted(frame['id']) == ["u1", "u2", "u3"]
    assert frame['discount_amount'].sum() == 4000
    assert {row.details.get("blockedBy") for row in sink.audit_rows} == {None, "camp-a"}
    engine.dispose()


def test_in_memory_write_keeps_both_kinds(usage_rows, audit_rows):
    sink = InMemoryAuditSink()
    sink.write(usage_rows, audit_rows)
    assert (len(sink.usage_rows), len(sink.audit_rows)) == (3, 2)


def test_sql_write_is_all_or_nothing(tmp_path, usage_rows, audit_rows):
    engine = create_storage_engine(f"sqlite:///{tmp_path / 'audit.db'}")
    init_schema(engine)
    CampaignAuditRecord.__table__.drop(engine)
    sink = SqlAuditSink(engine)

    with pytest.raises(InfrastructureError):
        sink.write(usage_rows, audit_rows)

    assert sink.usage_rows == []
    engine.dispose()
