"""
Debug logging utility for LLM interactions.
Appends every prompt sent to a provider, with its reply and settings, to a
per-session JSONL file.
"""
import json
import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class DebugLogger:
    """Logs all LLM interactions to session-specific files for debugging."""

    def __init__(self, debug_dir: Optional[Path] = None, enabled: bool = True):
        """Initialize debug logger.

        Args:
            debug_dir: Directory for debug logs. Defaults to data/debug_logs/sessions/
            enabled: Whether debug logging is enabled (from system config)
        """
        if debug_dir is None:
            debug_dir = Path("data/debug_logs/sessions")

        self.debug_dir = Path(debug_dir)
        self.enabled = enabled

        if self.enabled:
            self.debug_dir.mkdir(parents=True, exist_ok=True)
            logger.info(f"Debug logger initialized: {self.debug_dir}")

    def log_llm_interaction(
        self,
        conversation_id: str,
        interaction_type: str,
        model: str,
        prompt: Any,
        response: Optional[str] = None,
        settings: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None
    ):
        """Log an LLM interaction with full context.

        Args:
            conversation_id: Session id (or 'system' for calls outside a session)
            interaction_type: chat, group_turn, summarization, thinking, consistency_check
            model: Model name used
            prompt: Prompt text or provider message list
            response: LLM response (if available)
            settings: LLM settings (temperature, max_tokens, etc.)
            metadata: Additional metadata (character_id, lore entries, etc.)
            error: Error message if interaction failed
        """
        if not self.enabled:
            return

        session_dir = self.debug_dir / conversation_id
        log_file = session_dir / "conversation.jsonl"

        interaction = {
            "timestamp": datetime.now().isoformat(),
            "type": interaction_type,
            "model": model,
            "prompt": prompt,
            "response": response,
            "settings": settings or {},
            "metadata": metadata or {},
            "error": error
        }

        try:
            session_dir.mkdir(parents=True, exist_ok=True)
            with open(log_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(interaction, ensure_ascii=False, default=str) + "\n")
        except OSError as e:
            logger.error(f"Failed to write debug log: {e}", exc_info=True)
            return

        logger.debug(
            f"[DEBUG LOG] {interaction_type} | model={model} | "
            f"session={conversation_id} | error={error is not None}"
        )

    def get_conversation_log(self, conversation_id: str) -> List[Dict[str, Any]]:
        """Read all logged interactions for a session."""
        log_file = self.debug_dir / conversation_id / "conversation.jsonl"
        if not log_file.exists():
            return []

        interactions = []
        with open(log_file, "r", encoding="utf-8") as f:
            for line in f:
                if line.strip():
                    interactions.append(json.loads(line))

        return interactions

    def clear_conversation_log(self, conversation_id: str):
        """Delete debug log directory for a session."""
        session_dir = self.debug_dir / conversation_id
        if session_dir.exists():
            shutil.rmtree(session_dir)
            logger.info(f"Cleared debug logs for session {conversation_id}")
