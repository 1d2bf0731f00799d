"""
Configuration Loader
Loads and validates pipeline YAML files using Pydantic models.
"""

from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import ValidationError as PydanticValidationError

from nma_pipeline.app.config import settings
from nma_pipeline.core.exceptions import PipelineConfigError
from nma_pipeline.core.pipeline.models import PipelineConfig
from nma_pipeline.core.utils.logging import get_logger

logger = get_logger(__name__)


class ConfigLoader:
    """
    Loads and caches pipeline configurations.

    Configs are looked up under settings.pipelines_config_path, or under an
    explicit base path when one is given.
    """

    def __init__(self, base_path: Optional[str] = None):
        self.base_path = base_path
        self._cache: Dict[str, PipelineConfig] = {}

    def _find_path(self, pipeline_id: str) -> Path:
        if self.base_path is None:
            return Path(settings.find_pipeline_path(pipeline_id))

        base = Path(self.base_path)
        for suffix in (".yml", ".yaml"):
            matches = sorted(base.rglob(f"{pipeline_id}{suffix}"))
            if matches:
                return matches[0]
        raise FileNotFoundError(f"Pipeline '{pipeline_id}' not found under {base}")

    def load_pipeline_config(self, pipeline_id: str) -> PipelineConfig:
        """
        Load pipeline configuration from YAML file.

        Args:
            pipeline_id: Pipeline identifier (matches YAML filename)

        Returns:
            Validated PipelineConfig object

        Raises:
            PipelineConfigError: If the file is missing or invalid
        """
        if pipeline_id in self._cache:
            logger.debug(f"Config cache hit: {pipeline_id}")
            return self._cache[pipeline_id]

        try:
            config_path = self._find_path(pipeline_id)
        except FileNotFoundError as e:
            raise PipelineConfigError(pipeline_id, "pipeline config not found", original_error=e) from e

        return self.load_pipeline_file(config_path, cache_key=pipeline_id)

    def load_pipeline_file(self, config_path: Path, cache_key: Optional[str] = None) -> PipelineConfig:
        """Parse and validate a pipeline YAML file at an explicit path."""
        pipeline_id = cache_key or Path(config_path).stem

        try:
            with open(config_path, "r", encoding="utf-8") as f:
                config_dict: Dict[str, Any] = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise PipelineConfigError(pipeline_id, f"invalid YAML in {config_path}: {e}", original_error=e) from e
        except OSError as e:
            raise PipelineConfigError(pipeline_id, f"cannot read {config_path}: {e}", original_error=e) from e

        try:
            config = PipelineConfig(**config_dict)
        except PydanticValidationError as e:
            raise PipelineConfigError(pipeline_id, str(e), original_error=e) from e

        self._cache[pipeline_id] = config
        logger.info(
            f"Loaded pipeline config: {config.pipeline_id}",
            extra={"config_path": str(config_path), "num_steps": len(config.steps)}
        )
        return config

    def clear_cache(self) -> None:
        """Clear configuration cache."""
        self._cache.clear()


@lru_cache()
def get_config_loader() -> ConfigLoader:
    """Get cached config loader instance."""
    return ConfigLoader()
