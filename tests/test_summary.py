import asyncio

import pytest

from conftest import ScriptedBackend
from parley.service.errors import UpstreamModelError
from parley.service.model_backend import ModelConfig
from parley.service.summary import SummaryGenerator
from parley.storage.memory import MemoryStore


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def conversation(store):
    user = store.create_user("summary@example.com")
    conv = store.create_conversation(user.id, title="Garden")
    store.append_message(conv.id, "user", "Which tomatoes grow well in shade?")
    store.append_message(conv.id, "assistant", "Cherry varieties tolerate partial shade.")
    return conv


def make_generator(store, backend, **kwargs):
    return SummaryGenerator(store, ModelConfig(api_key="shared"), backend_factory=backend.bind, **kwargs)


class TestSummaryGenerator:
    def test_transcript_keeps_the_tail(self, store, conversation):
        generator = make_generator(store, ScriptedBackend([]), max_chars=30)
        transcript = generator.render_transcript(conversation.id)
        assert len(transcript) == 30
        assert transcript.endswith("partial shade.")

    async def test_summary_is_written(self, store, conversation):
        backend = ScriptedBackend([], summary="  Shade-tolerant tomatoes.  ")
        generator = make_generator(store, backend)

        assert await generator.regenerate(conversation.id) is True
        assert store.get_conversation(conversation.id).summary == "Shade-tolerant tomatoes."
        assert backend.summary_prompts[0].startswith("Summarize this conversation in under 60 words.")
        assert "user: Which tomatoes grow well in shade?" in backend.summary_prompts[0]

    async def test_empty_conversation_is_skipped(self, store):
        user = store.create_user("empty@example.com")
        conv = store.create_conversation(user.id)
        backend = ScriptedBackend([])

        assert await make_generator(store, backend).regenerate(conv.id) is False
        assert backend.summary_prompts == []

    async def test_failure_keeps_previous_summary(self, store, conversation):
        store.set_conversation_summary(conversation.id, "Old summary.")
        backend = ScriptedBackend([], summary=UpstreamModelError("model request failed"))

        assert await make_generator(store, backend).regenerate(conversation.id) is False
        assert store.get_conversation(conversation.id).summary == "Old summary."

    async def test_blank_result_is_not_written(self, store, conversation):
        store.set_conversation_summary(conversation.id, "Old summary.")
        backend = ScriptedBackend([], summary="   ")

        assert await make_generator(store, backend).regenerate(conversation.id) is False
        assert store.get_conversation(conversation.id).summary == "Old summary."

    async def test_personal_key_is_used(self, store, conversation):
        backend = ScriptedBackend([])
        await make_generator(store, backend).regenerate(conversation.id, api_key="personal")
        assert backend.configs[0].api_key == "personal"

    async def test_scheduled_runs_are_tracked(self, store, conversation):
        backend = ScriptedBackend([], summary="Tracked.")
        generator = make_generator(store, backend)

        task = generator.schedule(conversation.id)
        assert generator.pending == 1
        await generator.wait_idle()

        assert task.result() is True
        assert generator.pending == 0

    async def test_slow_model_times_out(self, store, conversation):
        class SlowBackend(ScriptedBackend):
            async def complete(self, prompt):
                await asyncio.sleep(5)
                return "too late"

        generator = make_generator(store, SlowBackend([]), timeout_seconds=0.05)

        assert await generator.regenerate(conversation.id) is False
        assert store.get_conversation(conversation.id).summary is None
