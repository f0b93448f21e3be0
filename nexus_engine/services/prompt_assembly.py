"""
Prompt Assembly Service

Builds the system directive sent with every chat turn:
- Base behavioral instructions
- User persona
- Running memory summary
- Retrieved world lore (ranked by LoreRetriever)
- Character persona, always last so it takes precedence

and pairs it with the normalized conversation history.

The lore index cache is owned by the service instance; pass one in to share
it between services or to observe rebuilds in tests.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence

from nexus_engine.config.models import SystemConfig
from nexus_engine.models import (
    Character,
    ConversationMessage,
    EntryInteractionStat,
    KnowledgeBase,
    KnowledgeEntry,
    Persona,
)
from .context_window import estimate_messages_tokens, estimate_tokens, to_api_messages
from .lore_index import LoreIndexCache
from .lore_retrieval import AuxiliaryText, LoreRetriever, ScoredEntry

logger = logging.getLogger(__name__)

SECTION_SEPARATOR = "\n\n"

GROUP_DIRECTOR_INSTRUCTIONS = (
    "You are a master storyteller and scene director for a multi-character roleplay. "
    "Your task is to advance the scene based on the latest user message and the "
    "established context. You must direct the characters, deciding who speaks or acts. "
    "You can have one or multiple characters act in a single turn. You can also "
    "include narrative descriptions."
)

GROUP_RESPONSE_FORMAT = """### RESPONSE FORMAT ###
YOUR RESPONSE MUST BE A VALID JSON OBJECT with a single key "turn".
The value of "turn" must be an array of action objects.
Each object in the array represents a single character's action or dialogue, or a narrative description.

The JSON schema for each object is: { "characterName": string, "content": string }
- For a character's turn, "characterName" MUST be their exact name from the character list.
- For narrative descriptions of the scene, use the special name "Narrator" for "characterName".
- "content" should be a string containing the dialogue and/or actions, following standard roleplay format (e.g., *He looks around.* "What was that?").

Based on the conversation history, generate the next turn in the scene."""


def format_lore_entry(entry: KnowledgeEntry) -> str:
    return f"--- Entry: {entry.display_name} (Keywords: {', '.join(entry.keys)}) ---\n{entry.content}"


def format_lore_block(entries: Sequence[KnowledgeEntry]) -> str:
    return "\n\n".join(format_lore_entry(e) for e in entries)


def _has_text(value: Optional[str]) -> bool:
    return bool(value and value.strip())


def _core_section(header: str, base_instructions: str) -> List[str]:
    if not _has_text(base_instructions):
        return []
    return [header, base_instructions]


def _user_persona_section(user_persona: Optional[Persona], intro: str) -> List[str]:
    if user_persona is None:
        return []
    fields = [
        f"- **{label}:** {value}"
        for label, value in (("Name", user_persona.name), ("Description", user_persona.description))
        if _has_text(value)
    ]
    if not fields:
        return []
    return ["### USER PERSONA ###", intro] + fields


def _summary_section(memory_summary: Optional[str], intro: str) -> List[str]:
    if not _has_text(memory_summary):
        return []
    return ["### CONVERSATION SUMMARY ###", intro, f"---\n{memory_summary}\n---"]


def _lore_section(lore_entries: Sequence[KnowledgeEntry]) -> List[str]:
    if not lore_entries:
        return []
    return [
        "### RELEVANT WORLD LORE ###",
        "The following lore entries are relevant to the current scene. "
        "You MUST consult them for context and consistency.",
        format_lore_block(lore_entries),
    ]


def _character_section(character_persona: str) -> List[str]:
    if not _has_text(character_persona):
        return []
    return [
        "### YOUR CHARACTER ###",
        "This is your character's persona for this scene. You must fully embody this character.",
        character_persona,
    ]


def build_system_prompt(
    base_instructions: str,
    user_persona: Optional[Persona],
    memory_summary: Optional[str],
    lore_entries: Sequence[KnowledgeEntry],
    character_persona: str,
) -> str:
    """
    Concatenate the directive sections in their fixed order.

    Empty or blank inputs drop their whole section, header included. The
    character persona, when present, is always the final section.
    """
    parts = _core_section("### CORE INSTRUCTIONS & GUIDELINES ###", base_instructions)
    parts += _user_persona_section(
        user_persona,
        "This is the persona of the user you are roleplaying with. "
        "Keep their details in mind for your responses.",
    )
    parts += _summary_section(
        memory_summary,
        "This is a summary of the conversation so far. Use it to maintain context and continuity.",
    )
    parts += _lore_section(lore_entries)
    parts += _character_section(character_persona)
    return SECTION_SEPARATOR.join(parts)


def build_group_directive(
    base_instructions: str,
    scenario: str,
    characters: Sequence[Character],
    user_persona: Optional[Persona],
    memory_summary: Optional[str],
    lore_entries: Sequence[KnowledgeEntry],
) -> str:
    """Directive for the scene director call, ending with the JSON response format."""
    parts = [
        "### CORE INSTRUCTIONS: GROUP SCENE DIRECTOR ###",
        GROUP_DIRECTOR_INSTRUCTIONS,
        "### SCENE DETAILS ###",
        f"**Scenario:** {scenario}",
        "**Characters in Scene:**\n" + "\n".join(f"- {c.name}" for c in characters),
    ]
    parts += _core_section("### ROLEPLAY GUIDELINES ###", base_instructions)
    parts += _user_persona_section(user_persona, "This is the persona of the user you are roleplaying with.")
    parts += _summary_section(memory_summary, "This is a summary of the conversation so far.")
    parts += _lore_section(lore_entries)
    parts += [
        "### FULL CHARACTER PERSONAS ###",
        "This is a reference for all characters in the scene. "
        "Use it to ensure their actions and dialogue are in-character.",
        "\n\n".join(f"--- {c.name} ---\n{c.persona}\n---" for c in characters),
        GROUP_RESPONSE_FORMAT,
    ]
    return SECTION_SEPARATOR.join(parts)


@dataclass
class PromptComponents:
    """Components of an assembled prompt."""
    system_prompt: str
    messages: List[Dict[str, str]]
    lore: List[ScoredEntry] = field(default_factory=list)
    token_breakdown: Dict[str, int] = field(default_factory=dict)

    @property
    def total_tokens(self) -> int:
        return sum(self.token_breakdown.values())


class PromptAssemblyService:
    """
    Assembles complete prompts for LLM generation.

    History passed in is expected to be already fitted to the token budget
    (and possibly condensed by the memory manager); this service normalizes
    roles and adds the directive.
    """

    def __init__(
        self,
        config: Optional[SystemConfig] = None,
        index_cache: Optional[LoreIndexCache] = None,
        retriever: Optional[LoreRetriever] = None,
    ):
        self.config = config or SystemConfig()
        self.index_cache = index_cache or LoreIndexCache()
        self.retriever = retriever or LoreRetriever(self.config.retrieval)

    def retrieve_lore(
        self,
        world: Optional[KnowledgeBase],
        history: Sequence[ConversationMessage],
        user_persona: Optional[Persona] = None,
        character_persona: Optional[str] = None,
        interaction_stats: Optional[Mapping[str, EntryInteractionStat]] = None,
        speaker_names: Sequence[str] = (),
    ) -> List[ScoredEntry]:
        """Rank the world's entries against the recent window and personas."""
        if world is None or not world.enabled_entries:
            return []

        index = self.index_cache.get_index(world)
        window = list(history)[-self.config.retrieval.recent_message_window:]
        auxiliary = [
            AuxiliaryText(
                user_persona.description if user_persona else None,
                self.config.retrieval.user_persona_weight,
                "User Persona",
            ),
            AuxiliaryText(character_persona, self.config.retrieval.character_persona_weight, "Character Persona"),
        ]
        ranked = self.retriever.retrieve(
            index,
            window,
            auxiliary_texts=auxiliary,
            interaction_stats=interaction_stats,
            linked_speaker_names=speaker_names,
        )

        if ranked:
            logger.info(
                f"Injected {len(ranked)} lore entries from world '{world.name}': "
                + ", ".join(f"{s.entry.display_name}={round(s.score)}" for s in ranked)
            )
            for scored in ranked:
                logger.debug(f"  {scored.entry.display_name}: {'; '.join(scored.reasons)}")
        return ranked

    def suggest_lore(self, world: Optional[KnowledgeBase], messages: Sequence[ConversationMessage]) -> List[KnowledgeEntry]:
        """Entries worth surfacing to the user for the given messages."""
        if world is None:
            return []
        return self.retriever.suggest(self.index_cache.get_index(world), messages)

    def assemble_prompt(
        self,
        history: Sequence[ConversationMessage],
        character: Character,
        user_persona: Optional[Persona] = None,
        world: Optional[KnowledgeBase] = None,
        memory_summary: Optional[str] = None,
        interaction_stats: Optional[Mapping[str, EntryInteractionStat]] = None,
        prefill: Optional[str] = None,
        thinking_context: Optional[str] = None,
    ) -> PromptComponents:
        """
        Assemble the single-character prompt.

        Args:
            history: Fitted conversation history, oldest first
            character: Character the model plays
            user_persona: The user's persona, if any
            world: Linked knowledge base, if any
            memory_summary: Running summary of condensed turns
            interaction_stats: Entry view stats for ``world``
            prefill: Start of the reply, sent as a trailing assistant message
            thinking_context: Reasoning notes placed ahead of the directive

        Returns:
            PromptComponents with the provider message list
        """
        lore = self.retrieve_lore(
            world,
            history,
            user_persona=user_persona,
            character_persona=character.persona,
            interaction_stats=interaction_stats,
            speaker_names=[character.name],
        )

        system_prompt = build_system_prompt(
            self.config.generation.system_prompt,
            user_persona,
            memory_summary,
            [s.entry for s in lore],
            character.persona,
        )
        if thinking_context:
            system_prompt = f"{thinking_context}{SECTION_SEPARATOR}{system_prompt}"

        messages = to_api_messages(system_prompt, history)
        if prefill:
            messages.append({"role": "assistant", "content": prefill})

        return PromptComponents(
            system_prompt=system_prompt,
            messages=messages,
            lore=lore,
            token_breakdown={
                "system": estimate_tokens(system_prompt),
                "history": estimate_messages_tokens(history),
                "prefill": estimate_tokens(prefill or ""),
            },
        )

    def assemble_group_prompt(
        self,
        history: Sequence[ConversationMessage],
        characters: Sequence[Character],
        scenario: str,
        user_persona: Optional[Persona] = None,
        world: Optional[KnowledgeBase] = None,
        memory_summary: Optional[str] = None,
        interaction_stats: Optional[Mapping[str, EntryInteractionStat]] = None,
    ) -> PromptComponents:
        """Assemble the scene director prompt for a group session."""
        lore = self.retrieve_lore(
            world,
            history,
            user_persona=user_persona,
            character_persona="\n\n".join(c.persona for c in characters),
            interaction_stats=interaction_stats,
            speaker_names=[c.name for c in characters],
        )

        system_prompt = build_group_directive(
            self.config.generation.system_prompt,
            scenario,
            characters,
            user_persona,
            memory_summary,
            [s.entry for s in lore],
        )
        messages = to_api_messages(system_prompt, history)

        return PromptComponents(
            system_prompt=system_prompt,
            messages=messages,
            lore=lore,
            token_breakdown={
                "system": estimate_tokens(system_prompt),
                "history": estimate_messages_tokens(history),
            },
        )
