"""Ingestion of markets, resolutions and trade history."""

from app.services.ingestion.pipeline import BudgetExhausted, IngestionPipeline

__all__ = [
    "BudgetExhausted",
    "IngestionPipeline",
]
