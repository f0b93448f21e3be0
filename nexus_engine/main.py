"""Terminal chat entry point for Nexus Engine."""

import argparse
import asyncio
import io
import logging
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Optional

from nexus_engine.config import ConfigLoader, ConfigLoadError, SystemConfig
from nexus_engine.llm import create_llm_client
from nexus_engine.llm.base import LLMError
from nexus_engine.models import (
    Cancelled,
    Completed,
    Failed,
    GenerationResult,
    KnowledgeBase,
    NARRATOR_ID,
    NARRATOR_NAME,
)
from nexus_engine.services import (
    GenerationInProgressError,
    GenerationOrchestrator,
    SessionStore,
    check_consistency,
    validate_world,
)
from nexus_engine.utils.debug_logger import DebugLogger

HELP_TEXT = """Commands:
  /regen              regenerate the last reply
  /continue           continue the last reply
  /prev, /next        switch between regenerated replies
  /memory on|off      toggle long-term memory summarization
  /world <id>         link a world (worlds/<id>.yaml) to this chat
  /suggest            show lore entries related to the conversation
  /view <entry id>    show a lore entry (counts as an interaction)
  /validate           lint the linked world
  /check              ask the model for contradictions in the linked world
  /quit               exit
Ctrl-C while a reply is generating stops it and keeps the partial text."""


def setup_logging(debug: bool = False, data_dir: Path = Path("data")):
    """Configure logging."""

    # Force UTF-8 encoding for stdout/stderr on Windows
    if sys.platform == 'win32':
        sys.stdout = io.TextIOWrapper(sys.stdout.buffer, encoding='utf-8', errors='replace')
        sys.stderr = io.TextIOWrapper(sys.stderr.buffer, encoding='utf-8', errors='replace')

    handlers = [logging.StreamHandler(sys.stderr)]
    log_file = None

    if debug:
        log_dir = data_dir / "debug_logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_file = log_dir / f"nexus_{timestamp}.log"

        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
        handlers.append(file_handler)

    logging.basicConfig(
        level=logging.WARNING,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True
    )

    # Terminal output is for the chat; app logs are verbose only in debug mode
    logging.getLogger("nexus_engine").setLevel(logging.DEBUG if debug else logging.WARNING)

    logging.getLogger('httpcore').setLevel(logging.WARNING)
    logging.getLogger('httpx').setLevel(logging.WARNING)

    if log_file is not None:
        logging.getLogger(__name__).info(f"Log file: {log_file}")
    return log_file


def _speaker_label(orchestrator: GenerationOrchestrator, character_id: Optional[str], default: str) -> str:
    if character_id == NARRATOR_ID:
        return NARRATOR_NAME
    character = orchestrator.store.get_character(character_id)
    return character.name if character else default


def _print_result(orchestrator: GenerationOrchestrator, session_id: str, result, default_name: str):
    if isinstance(result, Failed):
        print(f"[error] {result.error}")
        return
    ids = result.message_ids if not isinstance(result, Cancelled) else [result.message_id]
    for message_id in ids:
        message = orchestrator.store.get_message(message_id) if message_id else None
        if message is None:
            continue
        for step in message.thinking_process:
            print(f"  ({step.title}) {step.content}")
        label = _speaker_label(orchestrator, message.character_id, default_name)
        suffix = ""
        if message.alternates is not None:
            suffix = f"  [{message.alternates.active_index + 1}/{len(message.alternates.ids)}]"
        print(f"{label}: {message.content}{suffix}")
    if isinstance(result, Cancelled):
        print(f"[stopped] {result.reason}")


async def run_turn(orchestrator: GenerationOrchestrator, turn: Awaitable[GenerationResult]) -> GenerationResult:
    """Await one generation with Ctrl-C mapped to ``orchestrator.stop()``."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, orchestrator.stop)
    except (NotImplementedError, RuntimeError):
        # No loop signal handlers on Windows; Ctrl-C exits as before.
        return await turn
    try:
        return await turn
    finally:
        loop.remove_signal_handler(signal.SIGINT)


async def run_chat(config: SystemConfig, loader: ConfigLoader, args) -> None:
    store = SessionStore(user_persona=loader.load_persona())
    world = loader.load_world(args.world) if args.world else None
    if world is not None:
        store.save_world(world)

    llm_client = create_llm_client(config.llm)
    debug_logger = DebugLogger(config.paths.data / "debug_logs" / "sessions") if config.debug else None
    orchestrator = GenerationOrchestrator(
        store,
        llm_client,
        config,
        debug_logger=debug_logger,
        on_error=lambda text: print(f"[warning] {text}"),
    )

    characters = [loader.load_character(cid) for cid in args.characters]
    if len(characters) > 1:
        session = store.create_group_session(characters, args.scenario or "", world_id=args.world)
        default_name = NARRATOR_NAME
    else:
        session = store.new_session(characters[0], world_id=args.world)
        default_name = characters[0].name
        for message in store.history(session.id):
            print(f"{default_name}: {message.content}")

    print(HELP_TEXT)

    try:
        while True:
            try:
                line = await asyncio.to_thread(input, "> ")
            except EOFError:
                break
            line = line.strip()
            if not line:
                continue

            try:
                if line == "/quit":
                    break
                elif line == "/regen":
                    result = await run_turn(orchestrator, orchestrator.regenerate(session.id))
                elif line == "/continue":
                    result = await run_turn(orchestrator, orchestrator.continue_generation(session.id))
                elif line in ("/prev", "/next"):
                    last = store.history(session.id)[-1:]
                    if last:
                        orchestrator.set_active_alternate(session.id, last[0].id, line[1:])
                        _print_result(orchestrator, session.id, _last_completed(store, session.id), default_name)
                    continue
                elif line.startswith("/memory"):
                    enabled = line.endswith("on")
                    store.set_memory_enabled(session.id, enabled)
                    print(f"[memory {'enabled' if enabled else 'disabled'}]")
                    continue
                elif line.startswith("/world "):
                    world = _link_world(store, loader, session.id, line[7:].strip()) or world
                    continue
                elif line == "/suggest":
                    for entry in orchestrator.lore_suggestions(session.id):
                        print(f"  {entry.id}: {entry.display_name}")
                    continue
                elif line.startswith("/view "):
                    _view_entry(store, world.id if world else None, line[6:].strip())
                    continue
                elif line == "/validate":
                    for issue in validate_world(world) if world else []:
                        print(f"  [{issue.severity}] {issue.type}: {issue.message}")
                    continue
                elif line == "/check":
                    if world is not None:
                        for issue in await check_consistency(world, llm_client, config.retry):
                            print(f"  [{issue.severity}] {issue.message} ({', '.join(issue.entry_ids)})")
                    continue
                elif line.startswith("/"):
                    print(HELP_TEXT)
                    continue
                else:
                    result = await run_turn(orchestrator, orchestrator.send_message(session.id, line))
            except GenerationInProgressError as e:
                print(f"[busy] {e}")
                continue
            except LLMError as e:
                print(f"[error] {e}")
                continue

            _print_result(orchestrator, session.id, result, default_name)
    finally:
        await llm_client.close()


def _last_completed(store: SessionStore, session_id: str):
    history = store.history(session_id)
    return Completed(message_ids=[history[-1].id] if history else [])


def _link_world(store: SessionStore, loader: ConfigLoader, session_id: str, world_id: str) -> Optional[KnowledgeBase]:
    try:
        world = loader.load_world(world_id)
    except ConfigLoadError as e:
        print(f"[error] {e}")
        return None
    store.save_world(world)
    store.set_session_world(session_id, world.id)
    print(f"[linked world '{world.name}' ({len(world.entries)} entries)]")
    return world


def _view_entry(store: SessionStore, world_id: Optional[str], entry_id: str) -> None:
    world = store.get_world(world_id)
    entry = next((e for e in world.entries if e.id == entry_id), None) if world else None
    if entry is None:
        print(f"[no lore entry '{entry_id}']")
        return
    stat = store.log_entry_interaction(world.id, entry.id)
    print(f"--- {entry.display_name} (viewed {stat.view_count}x) ---\n{entry.content}")


def main():
    """Run the terminal chat."""
    parser = argparse.ArgumentParser(description="Chat with one or more characters in the terminal")
    parser.add_argument("characters", nargs="+", help="Character id(s); more than one starts a group scene")
    parser.add_argument("--world", type=str, help="World id to link (worlds/<id>.yaml)")
    parser.add_argument("--scenario", type=str, help="Scenario for group scenes")
    parser.add_argument("--config-dir", type=Path, default=Path("."), help="Directory holding config/, characters/ and worlds/")
    args = parser.parse_args()

    loader = ConfigLoader(args.config_dir)
    try:
        config = loader.load_system_config()
    except ConfigLoadError as e:
        logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        logging.getLogger(__name__).warning(f"Could not load system config: {e}, using defaults")
        config = SystemConfig()

    setup_logging(debug=config.debug, data_dir=config.paths.data)

    try:
        asyncio.run(run_chat(config, loader, args))
    except ConfigLoadError as e:
        print(e, file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
