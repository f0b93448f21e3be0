"""
In-memory session store.

Holds messages by id, single and group sessions, and the characters and
worlds they reference. Every update replaces whole values
(``model_copy(update=...)``); records are never mutated in place, so a reader
holding a session or message always sees a consistent value.
"""

import logging
from datetime import date
from typing import Dict, Iterable, List, Optional, Sequence, Union

from nexus_engine.models import (
    Character,
    ConversationMessage,
    EntryInteractionStat,
    GenerationSettings,
    GroupSession,
    KnowledgeBase,
    MessageRole,
    Persona,
    Session,
    generate_uuid,
)
from .lore_index import LoreIndexCache

logger = logging.getLogger(__name__)

AnySession = Union[Session, GroupSession]


class SessionStore:
    """Handle storage operations for sessions, messages and lore stats."""

    def __init__(self, user_persona: Optional[Persona] = None, index_cache: Optional[LoreIndexCache] = None):
        self.messages: Dict[str, ConversationMessage] = {}
        self.sessions: Dict[str, AnySession] = {}
        self.characters: Dict[str, Character] = {}
        self.worlds: Dict[str, KnowledgeBase] = {}
        self.user_persona = user_persona
        # shared with the prompt assembler; evicted when a world is deleted
        self.index_cache = index_cache or LoreIndexCache()
        # world id -> entry id -> stat
        self._interactions: Dict[str, Dict[str, EntryInteractionStat]] = {}

    # --- Characters and worlds ---

    def add_character(self, character: Character) -> Character:
        self.characters[character.id] = character
        return character

    def get_character(self, character_id: Optional[str]) -> Optional[Character]:
        if character_id is None:
            return None
        return self.characters.get(character_id)

    def save_world(self, world: KnowledgeBase) -> KnowledgeBase:
        """Add or replace a world."""
        self.worlds[world.id] = world
        return world

    def get_world(self, world_id: Optional[str]) -> Optional[KnowledgeBase]:
        if world_id is None:
            return None
        return self.worlds.get(world_id)

    def delete_world(self, world_id: str) -> bool:
        """Delete a world, drop its cached lore index and unlink it from every session."""
        if self.worlds.pop(world_id, None) is None:
            return False
        if world_id in self.index_cache:
            self.index_cache.invalidate(world_id)
            logger.debug(f"Evicted lore index for deleted world {world_id}")
        unlinked = self.unlink_world(world_id)
        logger.info(f"Deleted world {world_id}; unlinked from {unlinked} sessions")
        return True

    # --- Sessions ---

    def get_session(self, session_id: str) -> Optional[AnySession]:
        return self.sessions.get(session_id)

    def save_session(self, session: AnySession) -> AnySession:
        self.sessions[session.id] = session
        return session

    def new_session(
        self,
        character: Character,
        world_id: Optional[str] = None,
        settings: Optional[GenerationSettings] = None,
    ) -> Session:
        """
        Start a new single-character session.

        The character's greeting, if any, becomes the first assistant message.
        """
        self.add_character(character)
        message_ids = []
        if character.greeting:
            greeting = ConversationMessage(role=MessageRole.ASSISTANT, content=character.greeting)
            self.messages[greeting.id] = greeting
            message_ids.append(greeting.id)

        session = Session(
            title=f"New Chat - {date.today().isoformat()}",
            character_id=character.id,
            message_ids=message_ids,
            world_id=world_id,
            settings=settings or GenerationSettings(),
        )
        logger.info(f"Created session {session.id} with {character.name}")
        return self.save_session(session)

    def create_group_session(
        self,
        characters: Sequence[Character],
        scenario: str,
        world_id: Optional[str] = None,
    ) -> GroupSession:
        for character in characters:
            self.add_character(character)
        session = GroupSession(
            title=f"Group: {', '.join(c.name for c in characters[:3])}",
            character_ids=[c.id for c in characters],
            scenario=scenario,
            world_id=world_id,
        )
        logger.info(f"Created group session {session.id} with {len(characters)} characters")
        return self.save_session(session)

    def update_session(self, session_id: str, **changes) -> Optional[AnySession]:
        """Replace a session with a copy carrying ``changes``."""
        session = self.sessions.get(session_id)
        if session is None:
            logger.warning(f"Session {session_id} not found")
            return None
        return self.save_session(session.model_copy(update=changes))

    def set_message_ids(self, session_id: str, message_ids: Iterable[str]) -> Optional[AnySession]:
        return self.update_session(session_id, message_ids=list(message_ids))

    def set_session_world(self, session_id: str, world_id: Optional[str]) -> Optional[AnySession]:
        return self.update_session(session_id, world_id=world_id)

    def update_session_settings(self, session_id: str, **settings) -> Optional[AnySession]:
        """Override temperature / context_size / max_output_tokens for one session."""
        session = self.sessions.get(session_id)
        if session is None:
            return None
        merged = GenerationSettings.model_validate(
            {**session.settings.model_dump(), **settings}
        )
        return self.update_session(session_id, settings=merged)

    def set_memory_enabled(self, session_id: str, enabled: bool) -> Optional[AnySession]:
        return self.update_session(session_id, memory_enabled=enabled)

    def unlink_world(self, world_id: str) -> int:
        """Clear ``world_id`` from every session using it. Returns the count."""
        count = 0
        for session in list(self.sessions.values()):
            if session.world_id == world_id:
                self.save_session(session.model_copy(update={"world_id": None}))
                count += 1
        return count

    def fork_session(self, session_id: str, message_id: str) -> Optional[AnySession]:
        """
        Copy a session's history up to and including ``message_id``.

        Messages are shared between the original and the fork by id.
        """
        session = self.sessions.get(session_id)
        if session is None or message_id not in session.message_ids:
            return None
        index = session.message_ids.index(message_id)
        fork = session.model_copy(update={
            "id": generate_uuid(),
            "title": f"Fork of {session.title}",
            "message_ids": session.message_ids[: index + 1],
        })
        logger.info(f"Forked session {session_id} -> {fork.id} at message {message_id}")
        return self.save_session(fork)

    def delete_session(self, session_id: str) -> bool:
        """Delete a session and its messages."""
        session = self.sessions.pop(session_id, None)
        if session is None:
            return False
        for message_id in session.message_ids:
            self.messages.pop(message_id, None)
        logger.info(f"Deleted session {session_id} ({len(session.message_ids)} messages)")
        return True

    # --- Messages ---

    def get_message(self, message_id: str) -> Optional[ConversationMessage]:
        return self.messages.get(message_id)

    def save_message(self, message: ConversationMessage) -> ConversationMessage:
        """Add or replace a message record without touching any session."""
        self.messages[message.id] = message
        return message

    def update_message(self, message_id: str, **changes) -> Optional[ConversationMessage]:
        message = self.messages.get(message_id)
        if message is None:
            return None
        return self.save_message(message.model_copy(update=changes))

    def add_message(self, session_id: str, message: ConversationMessage) -> Optional[ConversationMessage]:
        """Store a message and append it to the session's turn order."""
        session = self.sessions.get(session_id)
        if session is None:
            logger.warning(f"Cannot add message: session {session_id} not found")
            return None
        self.save_message(message)
        self.save_session(session.model_copy(update={"message_ids": session.message_ids + [message.id]}))
        return message

    def edit_message(self, message_id: str, content: str) -> Optional[ConversationMessage]:
        return self.update_message(message_id, content=content)

    def delete_message(self, session_id: str, message_id: str) -> bool:
        return self.delete_messages(session_id, [message_id]) > 0

    def delete_messages(self, session_id: str, message_ids: Iterable[str]) -> int:
        """Remove messages from a session and the store. Returns how many were in the session."""
        session = self.sessions.get(session_id)
        if session is None:
            return 0
        to_delete = set(message_ids)
        for message_id in to_delete:
            self.messages.pop(message_id, None)
        kept = [m for m in session.message_ids if m not in to_delete]
        self.save_session(session.model_copy(update={"message_ids": kept}))
        return len(session.message_ids) - len(kept)

    def history(self, session_id: str) -> List[ConversationMessage]:
        """Messages of a session in turn order."""
        session = self.sessions.get(session_id)
        if session is None:
            return []
        return [self.messages[m] for m in session.message_ids if m in self.messages]

    # --- Lore interaction stats ---

    def log_entry_interaction(self, world_id: str, entry_id: str, now: Optional[float] = None) -> EntryInteractionStat:
        """Record one view of a lore entry."""
        stats = self._interactions.setdefault(world_id, {})
        stat = stats.get(entry_id, EntryInteractionStat()).record_view(now)
        stats[entry_id] = stat
        return stat

    def interaction_stats(self, world_id: Optional[str]) -> Dict[str, EntryInteractionStat]:
        if world_id is None:
            return {}
        return dict(self._interactions.get(world_id, {}))
