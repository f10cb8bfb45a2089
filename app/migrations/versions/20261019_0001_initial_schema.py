"""Initial schema for Sharpline.

Revision ID: 0001
Revises:
Create Date: 2026-10-19

Creates every table the jobs read or write:
- markets, resolutions, trades: mirror of the venue
- wallet_positions, wallet_stats, wallet_profiles, market_advice: derived
- trade_backfill, etl_state, etl_runs: job bookkeeping
- wallet_watchlist, wallet_live_cursor, token_prices: live refresh
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _now() -> sa.TextClause:
    return sa.text("now()")


def upgrade() -> None:
    # Markets. A NULL question marks a placeholder row.
    op.create_table(
        "markets",
        sa.Column("condition_id", sa.String(length=80), nullable=False),
        sa.Column("question", sa.Text(), nullable=True),
        sa.Column("slug", sa.String(length=300), nullable=True),
        sa.Column("event_slug", sa.String(length=300), nullable=True),
        sa.Column("group_item_title", sa.String(length=300), nullable=True),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("outcomes", postgresql.JSONB(), nullable=True),
        sa.Column("clob_token_ids", postgresql.JSONB(), nullable=True),
        sa.Column("outcome_prices", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=_now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=_now(), nullable=False),
        sa.PrimaryKeyConstraint("condition_id"),
    )
    op.create_index("idx_markets_closed_end", "markets", ["closed", "end_date"])

    op.create_table(
        "resolutions",
        sa.Column("condition_id", sa.String(length=80), nullable=False),
        sa.Column("winning_token_id", sa.String(length=100), nullable=True),
        sa.Column("winning_outcome_index", sa.SmallInteger(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), server_default=_now(), nullable=False),
        sa.ForeignKeyConstraint(["condition_id"], ["markets.condition_id"]),
        sa.PrimaryKeyConstraint("condition_id"),
    )

    # Trades, keyed by content hash
    op.create_table(
        "trades",
        sa.Column("pk", sa.String(length=64), nullable=False),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("wallet", sa.String(length=42), nullable=False),
        sa.Column("condition_id", sa.String(length=80), nullable=False),
        sa.Column("side", sa.String(length=4), nullable=False),
        sa.Column("price", sa.Float(), nullable=False),
        sa.Column("size", sa.Float(), nullable=False),
        sa.Column("outcome", sa.String(length=200), nullable=True),
        sa.Column("outcome_index", sa.SmallInteger(), nullable=True),
        sa.Column("asset", sa.String(length=100), nullable=True),
        sa.Column("tx_hash", sa.String(length=80), nullable=True),
        sa.ForeignKeyConstraint(["condition_id"], ["markets.condition_id"]),
        sa.PrimaryKeyConstraint("pk"),
    )
    op.create_index("idx_trades_wallet_ts", "trades", ["wallet", "ts"])
    op.create_index("idx_trades_condition_ts", "trades", ["condition_id", "ts"])
    op.create_index("idx_trades_side_price", "trades", ["side", "price"])

    op.create_table(
        "wallet_positions",
        sa.Column("wallet", sa.String(length=42), nullable=False),
        sa.Column("condition_id", sa.String(length=80), nullable=False),
        sa.Column("outcome_index", sa.SmallInteger(), nullable=False),
        sa.Column("net_shares", sa.Float(), nullable=False, server_default="0"),
        sa.Column("last_trade_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=_now(), nullable=False),
        sa.PrimaryKeyConstraint("wallet", "condition_id", "outcome_index"),
    )
    op.create_index("idx_wallet_positions_condition", "wallet_positions", ["condition_id"])

    op.create_table(
        "wallet_stats",
        sa.Column("wallet", sa.String(length=42), nullable=False),
        sa.Column("threshold", sa.Float(), nullable=False),
        sa.Column("n", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("wins", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("expected_wins", sa.Float(), nullable=False, server_default="0"),
        sa.Column("variance", sa.Float(), nullable=False, server_default="0"),
        sa.Column("alphaz", sa.Float(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=_now(), nullable=False),
        sa.PrimaryKeyConstraint("wallet", "threshold"),
    )
    op.create_index(
        "idx_wallet_stats_threshold_alphaz", "wallet_stats", ["threshold", "alphaz"]
    )

    op.create_table(
        "wallet_profiles",
        sa.Column("wallet", sa.String(length=42), nullable=False),
        sa.Column("follow_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("is_followable", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("n_02", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("alphaz_02", sa.Float(), nullable=False, server_default="0"),
        sa.Column("hedge_rate", sa.Float(), nullable=False, server_default="0"),
        sa.Column("late_sniping_rate", sa.Float(), nullable=False, server_default="0"),
        sa.Column("last_trade_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=_now(), nullable=False),
        sa.PrimaryKeyConstraint("wallet"),
    )
    op.create_index("idx_wallet_profiles_score", "wallet_profiles", ["follow_score"])

    # Backfill cursors, one per resolved market
    op.create_table(
        "trade_backfill",
        sa.Column("condition_id", sa.String(length=80), nullable=False),
        sa.Column("next_offset", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("done", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("fail_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["condition_id"], ["markets.condition_id"]),
        sa.PrimaryKeyConstraint("condition_id"),
    )
    op.create_index(
        "idx_trade_backfill_pending",
        "trade_backfill",
        ["done", "next_retry_at", "updated_at"],
    )

    op.create_table(
        "etl_state",
        sa.Column("key", sa.String(length=100), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=_now(), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )

    # Job audit log
    op.create_table(
        "etl_runs",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("job", sa.String(length=50), nullable=False),
        sa.Column("request_id", sa.String(length=36), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=_now(), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("summary", postgresql.JSONB(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_etl_runs_job_started", "etl_runs", ["job", "started_at"])

    op.create_table(
        "market_advice",
        sa.Column("condition_id", sa.String(length=80), nullable=False),
        sa.Column("p_mkt_yes", sa.Float(), nullable=False),
        sa.Column("p_model_yes", sa.Float(), nullable=False),
        sa.Column("p_low", sa.Float(), nullable=False),
        sa.Column("p_high", sa.Float(), nullable=False),
        sa.Column("confidence", sa.Integer(), nullable=False),
        sa.Column("edge", sa.Float(), nullable=False),
        sa.Column("recommended_side", sa.String(length=3), nullable=False),
        sa.Column("recommended_prob", sa.Float(), nullable=False),
        sa.Column("pos_pressure", sa.Float(), nullable=False, server_default="0"),
        sa.Column("flow_pressure", sa.Float(), nullable=False, server_default="0"),
        sa.Column("net_yes_shares", sa.Float(), nullable=False, server_default="0"),
        sa.Column("net_no_shares", sa.Float(), nullable=False, server_default="0"),
        sa.Column("flow_yes_cost", sa.Float(), nullable=False, server_default="0"),
        sa.Column("flow_no_cost", sa.Float(), nullable=False, server_default="0"),
        sa.Column("hedge_agreement", sa.Float(), nullable=False, server_default="1"),
        sa.Column("top_drivers", postgresql.JSONB(), nullable=False),
        sa.Column("top_wallets", postgresql.JSONB(), nullable=False),
        sa.Column("prev_p_model_yes", sa.Float(), nullable=True),
        sa.Column("trend", sa.Float(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=_now(), nullable=False),
        sa.ForeignKeyConstraint(["condition_id"], ["markets.condition_id"]),
        sa.PrimaryKeyConstraint("condition_id"),
    )
    op.create_index("idx_market_advice_confidence", "market_advice", ["confidence"])

    # Live refresh
    op.create_table(
        "wallet_watchlist",
        sa.Column("wallet", sa.String(length=42), nullable=False),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=_now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=_now(), nullable=False),
        sa.PrimaryKeyConstraint("wallet"),
    )
    op.create_table(
        "wallet_live_cursor",
        sa.Column("wallet", sa.String(length=42), nullable=False),
        sa.Column("last_ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=_now(), nullable=False),
        sa.PrimaryKeyConstraint("wallet"),
    )
    op.create_table(
        "token_prices",
        sa.Column("token_id", sa.String(length=100), nullable=False),
        sa.Column("price", sa.Float(), nullable=False),
        sa.Column("fetched_at", sa.DateTime(timezone=True), server_default=_now(), nullable=False),
        sa.PrimaryKeyConstraint("token_id"),
    )


def downgrade() -> None:
    op.drop_table("token_prices")
    op.drop_table("wallet_live_cursor")
    op.drop_table("wallet_watchlist")
    op.drop_index("idx_market_advice_confidence", table_name="market_advice")
    op.drop_table("market_advice")
    op.drop_index("idx_etl_runs_job_started", table_name="etl_runs")
    op.drop_table("etl_runs")
    op.drop_table("etl_state")
    op.drop_index("idx_trade_backfill_pending", table_name="trade_backfill")
    op.drop_table("trade_backfill")
    op.drop_index("idx_wallet_profiles_score", table_name="wallet_profiles")
    op.drop_table("wallet_profiles")
    op.drop_index("idx_wallet_stats_threshold_alphaz", table_name="wallet_stats")
    op.drop_table("wallet_stats")
    op.drop_index("idx_wallet_positions_condition", table_name="wallet_positions")
    op.drop_table("wallet_positions")
    op.drop_index("idx_trades_side_price", table_name="trades")
    op.drop_index("idx_trades_condition_ts", table_name="trades")
    op.drop_index("idx_trades_wallet_ts", table_name="trades")
    op.drop_table("trades")
    op.drop_table("resolutions")
    op.drop_index("idx_markets_closed_end", table_name="markets")
    op.drop_table("markets")
