"""Pipeline configuration."""

from .settings import PipelineConfig, get_config, reload_config
