"""Services package."""

from .context_window import estimate_tokens, fit_history, normalize_roles, to_api_messages
from .generation import GenerationInProgressError, GenerationOrchestrator, SessionNotFoundError
from .lore_index import LoreIndex, LoreIndexCache, build_lore_index, stem
from .lore_retrieval import LoreRetriever, ScoredEntry, find_matches_in_text
from .memory_manager import MemoryManager, MemoryOutcome, SummarizationFailure
from .prompt_assembly import PromptAssemblyService, PromptComponents, build_system_prompt
from .session_store import SessionStore
from .thinking import ThinkingService
from .world_validation import ValidationIssue, check_consistency, validate_world

__all__ = [
    'estimate_tokens',
    'fit_history',
    'normalize_roles',
    'to_api_messages',
    'GenerationInProgressError',
    'GenerationOrchestrator',
    'SessionNotFoundError',
    'LoreIndex',
    'LoreIndexCache',
    'build_lore_index',
    'stem',
    'LoreRetriever',
    'ScoredEntry',
    'find_matches_in_text',
    'MemoryManager',
    'MemoryOutcome',
    'SummarizationFailure',
    'PromptAssemblyService',
    'PromptComponents',
    'build_system_prompt',
    'SessionStore',
    'ThinkingService',
    'ValidationIssue',
    'check_consistency',
    'validate_world',
]
