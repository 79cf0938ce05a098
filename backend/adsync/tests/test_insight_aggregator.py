"""Tests for insight persistence.

WHAT: Upsert semantics of InsightAggregator against a real (SQLite) session.
WHY: Past days are immutable; today's row must keep up with attribution lag.
REFERENCES: adsync/services/insight_aggregator.py
"""

import uuid
from datetime import date, timedelta

import pytest

from adsync.models import EntityTypeEnum, Insight, ProviderEnum
from adsync.schemas import InsightAction, RawInsight
from adsync.services.insight_aggregator import InsightAggregator

TODAY = date(2025, 6, 15)


def _raw(day, **kwargs):
    values = {"impressions": 1000, "clicks": 20, "spend": 10.0}
    values.update(kwargs)
    return RawInsight(entity_external_id="c1", date_start=day, **values)


@pytest.fixture
def aggregator(test_db_session):
    return InsightAggregator(test_db_session)


@pytest.fixture
def upsert(aggregator, account_id, test_db_session):
    entity_id = uuid.uuid4()

    def _upsert(rows, **kwargs):
        result = aggregator.upsert_insights(
            account_id,
            ProviderEnum.meta,
            EntityTypeEnum.campaign,
            entity_id,
            "day",
            {row.date_start: row for row in rows},
            today=TODAY,
            **kwargs,
        )
        test_db_session.commit()
        return result

    return _upsert


def _rows(session):
    return {row.date: row for row in session.query(Insight).all()}


class TestUpsertInsights:
    """Test insert, skip and overwrite rules."""

    def test_new_days_are_inserted_with_derived_ratios(self, upsert, test_db_session):
        result = upsert([_raw(TODAY - timedelta(days=1)), _raw(TODAY)], currency="EUR")

        assert result.written == 2
        assert result.skipped == 0
        rows = _rows(test_db_session)
        assert set(rows) == {TODAY - timedelta(days=1), TODAY}
        row = rows[TODAY]
        assert row.ctr == pytest.approx(2.0)
        assert row.cpc == pytest.approx(0.5)
        assert row.cpm == pytest.approx(10.0)
        assert row.currency == "EUR"
        assert row.external_id == "c1"

    def test_past_day_is_never_rewritten(self, upsert, test_db_session):
        """WHAT: A row 5 days back keeps its original values on re-sync.
        WHY: Closed days must not drift when the provider revises numbers.
        """
        past = TODAY - timedelta(days=5)
        upsert([_raw(past, impressions=1000)])

        result = upsert([_raw(past, impressions=5000)])

        assert result.written == 0
        assert result.skipped == 1
        assert _rows(test_db_session)[past].impressions == 1000

    def test_today_is_always_overwritten(self, upsert, test_db_session):
        upsert([_raw(TODAY, impressions=1000)])

        result = upsert([_raw(TODAY, impressions=1500, clicks=30)])

        assert result.written == 1
        row = _rows(test_db_session)[TODAY]
        assert row.impressions == 1500
        assert row.ctr == pytest.approx(2.0)
        assert test_db_session.query(Insight).count() == 1

    def test_force_overwrite_rewrites_past_days(self, upsert, test_db_session):
        past = TODAY - timedelta(days=5)
        upsert([_raw(past, spend=10.0)])

        upsert([_raw(past, spend=12.0)], force_overwrite=True)

        assert _rows(test_db_session)[past].spend == 12.0

    def test_actions_are_flattened(self, upsert, test_db_session):
        upsert([_raw(
            TODAY,
            actions=[InsightAction(action_type="purchase", value=3), InsightAction(action_type="like", value=9)],
            action_values=[InsightAction(action_type="purchase", value=120.0)],
            extras={"inline_link_clicks": 15},
        )])

        row = _rows(test_db_session)[TODAY]
        assert row.conversions == 3
        assert row.revenue == 120.0
        assert row.likes == 9
        assert row.link_clicks == 15

    def test_ratio_mismatch_is_a_warning_not_an_error(self, upsert, test_db_session):
        """Provider CTR reported as a fraction instead of percent is flagged, row still written."""
        result = upsert([_raw(TODAY, ctr=0.02)])

        assert result.written == 1
        assert len(result.warnings) == 1
        assert "ctr" in result.warnings[0]
        row = _rows(test_db_session)[TODAY]
        assert row.ctr == pytest.approx(2.0)
        assert row.metadata_["provider_ratios"]["ctr"] == 0.02

    def test_zero_impressions_leave_ratios_empty(self, upsert, test_db_session):
        upsert([_raw(TODAY, impressions=0, clicks=0, spend=0.0)])

        row = _rows(test_db_session)[TODAY]
        assert row.ctr is None
        assert row.cpc is None
        assert row.cpm is None
