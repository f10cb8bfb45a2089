"""Configuration for Sharpline."""

from app.config.pipeline import PipelineConfig, get_pipeline_config
from app.config.settings import Settings, get_settings

__all__ = ["Settings", "get_settings", "PipelineConfig", "get_pipeline_config"]
