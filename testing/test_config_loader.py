"""
Tests for configuration loading.

Tests cover:
- Defaults when no system config exists
- YAML loading and validation errors
- Character, persona and world files
"""

from pathlib import Path

import pytest

from nexus_engine.config import ConfigLoader, ConfigLoadError, SystemConfig
from nexus_engine.config.loader import ConfigValidationError


def write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


class TestSystemConfig:
    """Test suite for system config loading."""

    def test_defaults_when_missing(self, tmp_path):
        """Test a missing system.yaml yields defaults."""
        config = ConfigLoader(tmp_path).load_system_config()

        assert config == SystemConfig()
        assert config.memory.trigger_ratio == 0.75
        assert config.retrieval.max_lore_entries == 7
        assert config.generation.render_interval_ms == 100

    def test_loads_yaml(self, tmp_path):
        """Test values from system.yaml override defaults."""
        write(tmp_path / "config" / "system.yaml", """
llm:
  provider: ollama
  model: llama3
  base_url: http://localhost:11434/
thinking:
  enabled: true
  depth: deep
debug: true
unknown_section: ignored
""")
        config = ConfigLoader(tmp_path).load_system_config()

        assert config.llm.provider == "ollama"
        assert config.llm.base_url == "http://localhost:11434"
        assert config.thinking.depth == "deep"
        assert config.debug is True

    def test_empty_file_is_defaults(self, tmp_path):
        write(tmp_path / "config" / "system.yaml", "")
        assert ConfigLoader(tmp_path).load_system_config() == SystemConfig()

    def test_validation_error(self, tmp_path):
        """Test invalid values raise a readable ConfigValidationError."""
        path = write(tmp_path / "config" / "system.yaml", "llm:\n  temperature: 5\n  base_url: ftp://x\n")

        with pytest.raises(ConfigValidationError) as exc_info:
            ConfigLoader(tmp_path).load_system_config()

        assert exc_info.value.file_path == path
        assert "temperature" in str(exc_info.value)
        assert "base_url" in str(exc_info.value)

    def test_invalid_yaml(self, tmp_path):
        write(tmp_path / "config" / "system.yaml", "llm: [unclosed\n")
        with pytest.raises(ConfigLoadError, match="Invalid YAML"):
            ConfigLoader(tmp_path).load_system_config()


class TestContentFiles:
    """Test suite for characters, personas and worlds."""

    def test_character_id_defaults_to_filename(self, tmp_path):
        write(tmp_path / "characters" / "kael.yaml", "name: Kael\npersona: A weary knight.\n")
        character = ConfigLoader(tmp_path).load_character("kael")

        assert character.id == "kael"
        assert character.name == "Kael"

    def test_missing_character(self, tmp_path):
        with pytest.raises(ConfigLoadError, match="not found"):
            ConfigLoader(tmp_path).load_character("nobody")

    def test_persona_optional(self, tmp_path):
        """Test no persona file means no persona."""
        loader = ConfigLoader(tmp_path)
        assert loader.load_persona() is None

        write(tmp_path / "config" / "persona.yaml", "name: Rin\ndescription: A traveler.\n")
        assert loader.load_persona().name == "Rin"

    def test_world(self, tmp_path):
        write(tmp_path / "worlds" / "aerth.yaml", """
name: Aerth
entries:
  - id: sword
    name: Sunblade
    keys: [sword, blade]
    content: The Sunblade glows at dawn.
  - id: rule
    is_always_active: true
    category: World
    content: Magic is rare.
""")
        world = ConfigLoader(tmp_path).load_world("aerth")

        assert world.id == "aerth"
        assert [e.id for e in world.entries] == ["sword", "rule"]
        assert world.entries[1].is_always_active

    def test_world_duplicate_entry_ids(self, tmp_path):
        """Test entry ids must be unique within a world."""
        write(tmp_path / "worlds" / "bad.yaml", """
name: Bad
entries:
  - id: a
  - id: a
""")
        with pytest.raises(ConfigValidationError):
            ConfigLoader(tmp_path).load_world("bad")
