"""Domain models for Sharpline.

This module defines all database models: the venue mirror (markets,
resolutions, trades), the derived ledgers (positions, wallet statistics,
wallet profiles, cached advice) and the job bookkeeping tables (backfill
cursors, checkpoint store, run audit log).
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    SmallInteger,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, TimestampMixin


@dataclass(frozen=True)
class OutcomePair:
    """
    Exactly two strings, in venue order.

    Used for both outcome names and CLOB token ids. Binary markets are the
    only markets the system stores, so anything else is rejected here.
    """

    first: str
    second: str

    @classmethod
    def parse(cls, values: Any) -> "OutcomePair":
        if not isinstance(values, (list, tuple)) or len(values) != 2:
            raise ValueError(f"expected a pair, got {values!r}")
        if not all(isinstance(v, str) and v for v in values):
            raise ValueError(f"pair entries must be non-empty strings: {values!r}")
        return cls(values[0], values[1])

    def to_list(self) -> list[str]:
        return [self.first, self.second]

    def index_of(self, value: str) -> int | None:
        if value == self.first:
            return 0
        if value == self.second:
            return 1
        return None

    def __getitem__(self, index: int) -> str:
        return (self.first, self.second)[index]


class Market(Base, TimestampMixin):
    """
    Binary prediction market.

    Rows with a NULL question are placeholders inserted so trades can
    reference a market before its listing has been synced.
    """

    __tablename__ = "markets"

    condition_id: Mapped[str] = mapped_column(String(80), primary_key=True)
    question: Mapped[str | None] = mapped_column(Text, nullable=True)
    slug: Mapped[str | None] = mapped_column(String(300), nullable=True)
    event_slug: Mapped[str | None] = mapped_column(String(300), nullable=True)
    group_item_title: Mapped[str | None] = mapped_column(String(300), nullable=True)
    end_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    closed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    outcomes: Mapped[list[str] | None] = mapped_column(
        JSONB(none_as_null=True), nullable=True
    )
    clob_token_ids: Mapped[list[str] | None] = mapped_column(
        JSONB(none_as_null=True), nullable=True
    )
    outcome_prices: Mapped[list[float] | None] = mapped_column(
        JSONB(none_as_null=True), nullable=True
    )

    __table_args__ = (
        Index("idx_markets_closed_end", "closed", "end_date"),
    )

    @property
    def outcome_pair(self) -> OutcomePair | None:
        try:
            return OutcomePair.parse(self.outcomes)
        except ValueError:
            return None

    @property
    def token_pair(self) -> OutcomePair | None:
        try:
            return OutcomePair.parse(self.clob_token_ids)
        except ValueError:
            return None

    def __repr__(self) -> str:
        return f"<Market {self.condition_id} closed={self.closed}>"


class Resolution(Base):
    """Winning outcome of a closed market."""

    __tablename__ = "resolutions"

    condition_id: Mapped[str] = mapped_column(
        String(80), ForeignKey("markets.condition_id"), primary_key=True
    )
    winning_token_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    winning_outcome_index: Mapped[int | None] = mapped_column(
        SmallInteger, nullable=True, doc="0, 1 or NULL when the token is unknown"
    )
    resolved_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<Resolution {self.condition_id} winner={self.winning_outcome_index}>"


class Trade(Base):
    """
    One fill on the venue.

    The primary key is a content hash, so re-delivered trades collapse onto
    the same row and are never inserted twice.
    """

    __tablename__ = "trades"

    pk: Mapped[str] = mapped_column(String(64), primary_key=True)
    ts: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    wallet: Mapped[str] = mapped_column(String(42), nullable=False)
    condition_id: Mapped[str] = mapped_column(
        String(80), ForeignKey("markets.condition_id"), nullable=False
    )
    side: Mapped[str] = mapped_column(String(4), nullable=False, doc="'BUY' or 'SELL'")
    price: Mapped[float] = mapped_column(Float, nullable=False)
    size: Mapped[float] = mapped_column(Float, nullable=False)
    outcome: Mapped[str | None] = mapped_column(String(200), nullable=True)
    outcome_index: Mapped[int | None] = mapped_column(SmallInteger, nullable=True)
    asset: Mapped[str | None] = mapped_column(String(100), nullable=True)
    tx_hash: Mapped[str | None] = mapped_column(String(80), nullable=True)

    __table_args__ = (
        Index("idx_trades_wallet_ts", "wallet", "ts"),
        Index("idx_trades_condition_ts", "condition_id", "ts"),
        Index("idx_trades_side_price", "side", "price"),
    )

    def __repr__(self) -> str:
        return f"<Trade {self.wallet} {self.side} {self.size}@{self.price}>"


class WalletPosition(Base):
    """Net shares held by a wallet in one outcome of one market."""

    __tablename__ = "wallet_positions"

    wallet: Mapped[str] = mapped_column(String(42), primary_key=True)
    condition_id: Mapped[str] = mapped_column(String(80), primary_key=True)
    outcome_index: Mapped[int] = mapped_column(SmallInteger, primary_key=True)
    net_shares: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    last_trade_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("idx_wallet_positions_condition", "condition_id"),
    )


class WalletStats(Base):
    """Binomial edge statistics of a wallet's cheap BUYs at one price threshold."""

    __tablename__ = "wallet_stats"

    wallet: Mapped[str] = mapped_column(String(42), primary_key=True)
    threshold: Mapped[float] = mapped_column(Float, primary_key=True)
    n: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    wins: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    expected_wins: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    variance: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    alphaz: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("idx_wallet_stats_threshold_alphaz", "threshold", "alphaz"),
    )


class WalletProfile(Base):
    """Composite reliability score of a wallet. Rebuilt on every compute run."""

    __tablename__ = "wallet_profiles"

    wallet: Mapped[str] = mapped_column(String(42), primary_key=True)
    follow_score: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    is_followable: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    n_02: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    alphaz_02: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    hedge_rate: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    late_sniping_rate: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    last_trade_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("idx_wallet_profiles_score", "follow_score"),
    )


class TradeBackfill(Base):
    """Pagination cursor for pulling a resolved market's trade history."""

    __tablename__ = "trade_backfill"

    condition_id: Mapped[str] = mapped_column(
        String(80), ForeignKey("markets.condition_id"), primary_key=True
    )
    next_offset: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    done: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    fail_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    next_retry_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        Index("idx_trade_backfill_pending", "done", "next_retry_at", "updated_at"),
    )


class EtlState(Base):
    """Process-wide key/value checkpoint store."""

    __tablename__ = "etl_state"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class EtlRun(Base):
    """
    Job execution audit log.

    Append-only. Written by the cron guard for every run, including skipped
    ones. Nothing in the pipeline reads it back.
    """

    __tablename__ = "etl_runs"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    job: Mapped[str] = mapped_column(String(50), nullable=False)
    request_id: Mapped[str] = mapped_column(String(36), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, doc="'running', 'success', 'partial', 'skipped', 'error'"
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    finished_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    summary: Mapped[dict[str, Any] | None] = mapped_column(
        JSONB(none_as_null=True), nullable=True
    )
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("idx_etl_runs_job_started", "job", "started_at"),
    )

    def __repr__(self) -> str:
        return f"<EtlRun {self.job} status={self.status}>"


class MarketAdvice(Base):
    """Cached advice model output for one market."""

    __tablename__ = "market_advice"

    condition_id: Mapped[str] = mapped_column(
        String(80), ForeignKey("markets.condition_id"), primary_key=True
    )
    p_mkt_yes: Mapped[float] = mapped_column(Float, nullable=False)
    p_model_yes: Mapped[float] = mapped_column(Float, nullable=False)
    p_low: Mapped[float] = mapped_column(Float, nullable=False)
    p_high: Mapped[float] = mapped_column(Float, nullable=False)
    confidence: Mapped[int] = mapped_column(Integer, nullable=False)
    edge: Mapped[float] = mapped_column(Float, nullable=False)
    recommended_side: Mapped[str] = mapped_column(String(3), nullable=False)
    recommended_prob: Mapped[float] = mapped_column(Float, nullable=False)
    pos_pressure: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    flow_pressure: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    net_yes_shares: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    net_no_shares: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    flow_yes_cost: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    flow_no_cost: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    hedge_agreement: Mapped[float] = mapped_column(Float, default=1.0, nullable=False)
    top_drivers: Mapped[list[dict[str, Any]]] = mapped_column(JSONB, nullable=False)
    top_wallets: Mapped[list[dict[str, Any]]] = mapped_column(JSONB, nullable=False)
    prev_p_model_yes: Mapped[float | None] = mapped_column(Float, nullable=True)
    trend: Mapped[float | None] = mapped_column(Float, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("idx_market_advice_confidence", "confidence"),
    )


class WalletWatchlist(Base, TimestampMixin):
    """Manually curated wallets always considered by live refresh."""

    __tablename__ = "wallet_watchlist"

    wallet: Mapped[str] = mapped_column(String(42), primary_key=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)


class WalletLiveCursor(Base):
    """Latest trade timestamp seen by live refresh for a wallet."""

    __tablename__ = "wallet_live_cursor"

    wallet: Mapped[str] = mapped_column(String(42), primary_key=True)
    last_ts: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class TokenPrice(Base):
    """Latest quoted price of an outcome token."""

    __tablename__ = "token_prices"

    token_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    price: Mapped[float] = mapped_column(Float, nullable=False)
    fetched_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
