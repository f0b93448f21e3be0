"""Configuration loader with validation and error handling."""

import yaml
import logging
from pathlib import Path
from typing import Optional, Dict, Any
from pydantic import ValidationError

from nexus_engine.models import Character, KnowledgeBase, Persona
from .models import SystemConfig

logger = logging.getLogger(__name__)


class ConfigLoadError(Exception):
    """Base exception for configuration loading errors."""
    pass


class ConfigValidationError(ConfigLoadError):
    """Configuration validation failed."""

    def __init__(self, errors: list[dict], file_path: Path):
        self.errors = errors
        self.file_path = file_path
        super().__init__(self._format_errors())

    def _format_errors(self) -> str:
        """Format validation errors for user display."""
        lines = [f"Configuration validation failed for {self.file_path}:\n"]
        for error in self.errors:
            loc = " → ".join(str(l) for l in error['loc'])
            msg = error['msg']
            lines.append(f"  • {loc}: {msg}")
        return "\n".join(lines)


class ConfigLoader:
    """Loads system config plus character, persona and world files."""

    def __init__(self, config_dir: Path = Path(".")):
        self.config_dir = Path(config_dir)

    def load_yaml(self, file_path: Path) -> Dict[str, Any]:
        """Load YAML file with error handling."""
        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
                if data is None:
                    return {}
                return data
        except FileNotFoundError:
            raise ConfigLoadError(f"Configuration file not found: {file_path}")
        except yaml.YAMLError as e:
            raise ConfigLoadError(f"Invalid YAML in {file_path}: {e}")
        except OSError as e:
            raise ConfigLoadError(f"Failed to load {file_path}: {e}")

    def load_system_config(self, file_path: Optional[Path] = None) -> SystemConfig:
        """
        Load system configuration.

        Falls back to defaults if file not found.
        """
        if file_path is None:
            file_path = self.config_dir / "config" / "system.yaml"

        try:
            if not file_path.exists():
                logger.info(f"System config not found at {file_path}, using defaults")
                return SystemConfig()

            data = self.load_yaml(file_path)
            config = SystemConfig(**data)
            logger.info(f"Loaded system config from {file_path}")
            return config

        except ValidationError as e:
            raise ConfigValidationError(e.errors(), file_path)

    def load_character(self, character_id: str) -> Character:
        """Load ``characters/<id>.yaml``; the id defaults to the filename."""
        file_path = self.config_dir / "characters" / f"{character_id}.yaml"
        data = self.load_yaml(file_path)
        data.setdefault('id', character_id)
        try:
            character = Character(**data)
        except ValidationError as e:
            raise ConfigValidationError(e.errors(), file_path)
        logger.info(f"Loaded character '{character.name}' from {file_path}")
        return character

    def load_persona(self, file_path: Optional[Path] = None) -> Optional[Persona]:
        """Load the user persona, or None when no persona file exists."""
        if file_path is None:
            file_path = self.config_dir / "config" / "persona.yaml"
        if not file_path.exists():
            return None
        try:
            return Persona(**self.load_yaml(file_path))
        except ValidationError as e:
            raise ConfigValidationError(e.errors(), file_path)

    def load_world(self, world_id: str) -> KnowledgeBase:
        """Load ``worlds/<id>.yaml`` into a validated knowledge base."""
        file_path = self.config_dir / "worlds" / f"{world_id}.yaml"
        data = self.load_yaml(file_path)
        data.setdefault('id', world_id)
        try:
            world = KnowledgeBase(**data)
        except ValidationError as e:
            raise ConfigValidationError(e.errors(), file_path)
        logger.info(f"Loaded world '{world.name}' ({len(world.entries)} entries) from {file_path}")
        return world
