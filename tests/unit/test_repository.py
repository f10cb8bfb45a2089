"""Statement-level tests for SqlStore.

A recording Database captures what SqlStore executes; statements are
compiled for PostgreSQL and checked without a server.
"""

import re
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy.dialects import postgresql

from app.services.advice.model import AdviceModel, MarketQuote
from app.services.repository import SqlStore, advice_upsert

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


class RecordingSession:
    def __init__(self):
        self.statements = []

    async def execute(self, statement):
        self.statements.append(statement)
        return MagicMock()


class RecordingDatabase:
    def __init__(self):
        self.recorder = RecordingSession()

    @asynccontextmanager
    async def session(self):
        yield self.recorder


def compile_pg(statement):
    return statement.compile(dialect=postgresql.dialect())


def sample_advice():
    quote = MarketQuote("0xbinary0001", ["Yes", "No"], [0.3, 0.7])
    return AdviceModel().compute(quote, [], [], NOW)


class TestAdviceUpsert:
    """Test the trend bookkeeping of the advice cache write."""

    def test_first_write_has_no_trend(self):
        compiled = compile_pg(advice_upsert(sample_advice()))

        assert compiled.params["trend"] is None
        assert compiled.params["prev_p_model_yes"] is None
        assert compiled.params["p_model_yes"] == pytest.approx(0.3)

    def test_rewrite_records_previous_and_difference(self):
        """On conflict the stored estimate becomes the previous one."""
        sql = str(compile_pg(advice_upsert(sample_advice())))

        assert "ON CONFLICT (condition_id) DO UPDATE" in sql
        assert re.search(r"prev_p_model_yes = market_advice\.p_model_yes", sql)
        assert re.search(
            r"trend = \(?excluded\.p_model_yes - market_advice\.p_model_yes", sql
        ), "trend must be new minus previous"

    async def test_store_executes_the_upsert(self):
        database = RecordingDatabase()

        await SqlStore(database).upsert_advice(sample_advice())

        sql = str(compile_pg(database.recorder.statements[0]))
        assert sql.startswith("INSERT INTO market_advice")
        assert "RETURNING" in sql


class TestResolutionQueue:
    """Test how closed markets are queued for winner lookups."""

    async def test_pending_marker_never_overwrites_a_winner(self):
        database = RecordingDatabase()

        await SqlStore(database).mark_resolution_pending("0xmarket0001")

        compiled = compile_pg(database.recorder.statements[0])
        sql = str(compiled)
        assert compiled.params["condition_id"] == "0xmarket0001"
        assert "ON CONFLICT (condition_id) DO UPDATE SET resolved_at = now()" in sql
        assert "WHERE resolutions.winning_token_id IS NULL" in sql

    async def test_unchecked_markets_come_first(self):
        database = RecordingDatabase()

        markets = await SqlStore(database).list_unresolved_closed_markets(
            25, recheck_after=timedelta(hours=6)
        )

        assert markets == []
        sql = str(compile_pg(database.recorder.statements[0]))
        assert "LEFT OUTER JOIN resolutions" in sql
        assert "resolutions.resolved_at <" in sql
        assert re.search(
            r"ORDER BY resolutions\.condition_id IS NOT NULL, "
            r"markets\.end_date DESC NULLS LAST",
            sql,
        )
