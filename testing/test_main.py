"""
Tests for the terminal chat helpers.

Tests cover:
- Ctrl-C during a turn stopping the generation instead of exiting
- Linking a world to a running chat
- Printing a stopped turn
"""

import asyncio
import signal
import sys

import pytest
from fakes import FakeLLMClient

from nexus_engine.config import ConfigLoader, SystemConfig
from nexus_engine.main import _link_world, _print_result, run_turn
from nexus_engine.models import Cancelled, Character, Completed
from nexus_engine.services import GenerationOrchestrator, SessionStore

KAEL = Character(id="kael", name="Kael", persona="A weary knight.")


class RecordingOrchestrator:
    def __init__(self):
        self.stopped = asyncio.Event()

    def stop(self):
        self.stopped.set()
        return True


class TestRunTurn:
    """Test suite for run_turn."""

    def test_returns_turn_result(self):
        async def turn():
            return Completed(message_ids=["m1"])

        result = asyncio.run(run_turn(RecordingOrchestrator(), turn()))
        assert result == Completed(message_ids=["m1"])

    @pytest.mark.skipif(sys.platform == "win32", reason="loop signal handlers are POSIX only")
    def test_interrupt_stops_generation(self):
        """Test SIGINT during a turn calls stop instead of interrupting the program."""
        orchestrator = RecordingOrchestrator()

        async def turn():
            signal.raise_signal(signal.SIGINT)
            await asyncio.wait_for(orchestrator.stopped.wait(), 2)
            return Cancelled(message_id="m1")

        result = asyncio.run(run_turn(orchestrator, turn()))

        assert result == Cancelled(message_id="m1")


class TestChatCommands:
    """Test suite for chat command helpers."""

    def test_link_world(self, tmp_path, capsys):
        (tmp_path / "worlds").mkdir()
        (tmp_path / "worlds" / "aerth.yaml").write_text(
            "name: Aerth\nentries:\n  - id: sword\n    keys: [sword]\n    content: It glows.\n",
            encoding="utf-8",
        )
        store = SessionStore()
        session = store.new_session(KAEL)

        world = _link_world(store, ConfigLoader(tmp_path), session.id, "aerth")

        assert world.id == "aerth"
        assert store.get_session(session.id).world_id == "aerth"
        assert store.get_world("aerth") == world
        assert "[linked world 'Aerth' (1 entries)]" in capsys.readouterr().out

    def test_link_missing_world(self, tmp_path, capsys):
        store = SessionStore()
        session = store.new_session(KAEL)

        assert _link_world(store, ConfigLoader(tmp_path), session.id, "nowhere") is None
        assert store.get_session(session.id).world_id is None
        assert capsys.readouterr().out.startswith("[error] ")

    def test_print_stopped_turn(self, capsys):
        store = SessionStore()
        session = store.new_session(KAEL)
        orchestrator = GenerationOrchestrator(store, FakeLLMClient(chunks=["Hel"]), SystemConfig())
        result = asyncio.run(orchestrator.send_message(session.id, "Hi"))
        cancelled = Cancelled(message_id=result.message_ids[0], reason="Generation stopped by user.")

        _print_result(orchestrator, session.id, cancelled, "Kael")

        assert capsys.readouterr().out == "Kael: Hel\n[stopped] Generation stopped by user.\n"
