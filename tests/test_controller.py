"""Tests for the session controller wired to a real hub, provider, and page agent."""

from __future__ import annotations

import httpx
import pytest

from conftest import (
    FakePanelHost,
    FakeRasterizer,
    FakeSynthesizer,
    RecordingTransport,
    make_provider,
    openai_reply,
    openai_store,
    sse_body,
)
from weblm.controller import InputHistory, SessionController
from weblm.hub.handlers import build_hub
from weblm.lecture.engine import SPEECH_UNAVAILABLE_NOTE
from weblm.provider.downgrade import IMAGE_REJECTED_NOTE
from weblm.session_store import SessionStore
from weblm.settings_store import InMemorySettingsStore
from weblm.speech.voice import VoiceService


async def _controller(hub, responses, rasterizer=None, voice=None):
    transport = RecordingTransport(responses)
    provider = make_provider(transport, openai_store())
    await provider.load()
    build_hub(provider, rasterizer=rasterizer or FakeRasterizer(), panel_host=FakePanelHost(), hub=hub)
    controller = SessionController(hub, 1, SessionStore(), voice=voice, context_id="controller-1")
    return controller, transport


def _part_types(body):
    return [part["type"] for part in body["messages"][1]["content"]]


class TestAsk:
    @pytest.mark.asyncio
    async def test_answer_is_recorded_and_marks_the_page(self, hub, page_agent):
        controller, transport = await _controller(
            hub, [httpx.Response(200, json=openai_reply("Start with [mark: Installation]."))]
        )

        result = await controller.ask("Where do I begin?")

        assert result == {"success": True, "answer": "Start with [mark: Installation].", "status_text": ""}
        assert _part_types(transport.bodies()[0]) == ["image_url", "text"]
        assert "Getting started with widgets" in transport.bodies()[0]["messages"][1]["content"][1]["text"]
        assert [message.role for message in controller.messages()] == ["user", "assistant"]
        assert len(page_agent.annotations.marks) == 1

    @pytest.mark.asyncio
    async def test_capture_failure_means_no_screenshot(self, hub, page_agent):
        controller, transport = await _controller(
            hub,
            [httpx.Response(200, json=openai_reply("Text only."))],
            rasterizer=FakeRasterizer(error=RuntimeError("capture denied")),
        )

        result = await controller.ask("What is this?")

        assert result["success"] is True
        assert _part_types(transport.bodies()[0]) == ["text"]

    @pytest.mark.asyncio
    async def test_failure_is_answered_inline(self, hub, page_agent):
        controller, _ = await _controller(hub, [httpx.Response(500, json={"error": {"message": "boom"}})])

        result = await controller.ask("What is this?")

        assert result["success"] is False
        assert result["answer"] == "Request failed: API request failed (500): boom"
        stored = controller.messages()[-1]
        assert stored.content == result["answer"]
        assert stored.meta == {"error": True}

    @pytest.mark.asyncio
    async def test_downgrade_note_is_kept_with_the_answer(self, hub, page_agent):
        controller, transport = await _controller(
            hub,
            [
                httpx.Response(400, json={"error": {"message": "multimodal input is not supported"}}),
                httpx.Response(200, json=openai_reply("Fine without images.")),
            ],
        )

        result = await controller.ask("Explain")

        assert result["status_text"] == IMAGE_REJECTED_NOTE
        assert controller.messages()[-1].meta == {"status_text": IMAGE_REJECTED_NOTE}
        assert len(transport.requests) == 2

    @pytest.mark.asyncio
    async def test_auto_speak_reads_the_answer_while_it_streams(self, hub, page_agent):
        synth = FakeSynthesizer()
        voice = VoiceService(synth, store=InMemorySettingsStore({"autoSpeak": True}))
        frames = [
            {"choices": [{"delta": {"content": "Short answer. "}}]},
            {"choices": [{"delta": {"content": "Rate is 3"}}]},
            {"choices": [{"delta": {"content": ".5 now."}}]},
        ]
        controller, transport = await _controller(hub, [httpx.Response(200, content=sse_body(frames))], voice=voice)
        await controller.startup()

        result = await controller.ask("Explain")

        assert result["answer"] == "Short answer. Rate is 3.5 now."
        assert synth.spoken == ["Short answer.", "Rate is 3.5 now."]
        assert transport.bodies()[0]["stream"] is True
        assert controller.messages()[-1].content == "Short answer. Rate is 3.5 now."

    @pytest.mark.asyncio
    async def test_without_auto_speak_the_answer_is_not_streamed(self, hub, page_agent):
        synth = FakeSynthesizer()
        voice = VoiceService(synth, store=InMemorySettingsStore({"autoSpeak": False}))
        controller, transport = await _controller(hub, [httpx.Response(200, json=openai_reply("Quiet."))], voice=voice)

        result = await controller.ask("Explain")

        assert result["answer"] == "Quiet."
        assert synth.spoken == []
        assert transport.bodies()[0]["stream"] is False

    @pytest.mark.asyncio
    async def test_typed_input_is_recorded(self, hub, page_agent):
        controller, _ = await _controller(hub, [httpx.Response(200, json=openai_reply("ok"))])

        assert await controller.send("   ") is None
        await controller.send("first question")

        assert controller.history.entries == ["first question"]


class TestPanelFlow:
    @pytest.mark.asyncio
    async def test_startup_answers_pending_ask(self, hub, page_agent):
        controller, _ = await _controller(hub, [httpx.Response(200, json=openai_reply("Parked answer."))])
        hub.put_pending_ask("Explain this page")

        result = await controller.startup()

        assert result["answer"] == "Parked answer."
        assert controller.messages()[0].content == "Explain this page"
        assert hub.panel_state.is_open(1) is True
        assert hub.take_pending_ask() is None

    @pytest.mark.asyncio
    async def test_live_ask_from_the_page(self, hub, page_agent):
        controller, _ = await _controller(hub, [httpx.Response(200, json=openai_reply("Live answer."))])
        await controller.startup()

        await page_agent.explain_selection("small reusable parts")
        await controller.wait_idle()

        assert "small reusable parts" in controller.messages()[0].content
        assert controller.messages()[1].content == "Live answer."
        assert hub.take_pending_ask() is None

    @pytest.mark.asyncio
    async def test_voice_result_becomes_a_question(self, hub, page_agent):
        controller, _ = await _controller(hub, [httpx.Response(200, json=openai_reply("Heard you."))])
        await controller.startup()

        await hub.broadcast("VOICE_RESULT", {"text": "what is this"}, window_id=1)
        await controller.wait_idle()

        assert [message.content for message in controller.messages()] == ["what is this", "Heard you."]

    @pytest.mark.asyncio
    async def test_shutdown_closes_panel_and_unregisters(self, hub, page_agent):
        controller, _ = await _controller(hub, [httpx.Response(200, json=openai_reply("ok"))])
        await controller.startup()

        await controller.shutdown()

        assert hub.panel_state.is_open(1) is False
        assert hub.contexts_in_window(1, role="controller") == []

    @pytest.mark.asyncio
    async def test_new_conversation_resets(self, hub, page_agent):
        controller, _ = await _controller(hub, [httpx.Response(200, json=openai_reply("ok"))])
        await controller.send("question")

        result = await controller.new_conversation()

        assert result["success"] is True
        assert controller.messages() == []
        assert controller.history.entries == []


class TestLectureControls:
    @pytest.mark.asyncio
    async def test_unparseable_script_is_reported(self, hub, page_agent):
        controller, _ = await _controller(hub, [httpx.Response(200, json=openai_reply("no script today"))])

        result = await controller.start_lecture()

        assert result["success"] is False
        assert "JSON array" in result["error"]

    @pytest.mark.asyncio
    async def test_without_voice_only_the_script_is_made(self, hub, page_agent):
        script = '[{"description": "Installation", "scrollPercent": 50, "say": "Install it."}]'
        controller, _ = await _controller(hub, [httpx.Response(200, json=openai_reply(script))])

        result = await controller.start_lecture()

        assert result == {"success": True, "state": "completed", "steps": 1, "note": SPEECH_UNAVAILABLE_NOTE}
        assert controller.pause_lecture() is False
        assert controller.resume_lecture() is False
        assert await controller.cancel_lecture() is False

    @pytest.mark.asyncio
    async def test_voice_input_missing(self, hub, page_agent):
        controller, _ = await _controller(hub, [httpx.Response(200, json=openai_reply("ok"))])

        assert controller.toggle_voice_input() == {
            "success": False,
            "error": "speech recognition is not available",
        }

    @pytest.mark.asyncio
    async def test_speech_lost_during_narration_is_reported(self, hub, page_agent):
        synth = FakeSynthesizer()
        synth.on_speak = lambda text: setattr(synth, "available", False)
        voice = VoiceService(synth, voice_wait=0.01)
        script = (
            '[{"description": "Installation", "scrollPercent": 20, "say": "Install it."},'
            ' {"description": "Installation", "scrollPercent": 60, "say": "Then run it."}]'
        )
        controller, _ = await _controller(hub, [httpx.Response(200, json=openai_reply(script))], voice=voice)

        result = await controller.start_lecture()

        assert result == {"success": False, "error": "Narration stopped: speech synthesis is not available"}
        assert synth.spoken == ["Install it."]
        assert page_agent.annotations.marks == []


class TestAutoScrollToggle:
    @pytest.mark.asyncio
    async def test_toggle_starts_then_stops(self, hub, page_agent):
        controller, _ = await _controller(hub, [httpx.Response(200, json=openai_reply("ok"))])

        started = await controller.toggle_auto_scroll("slow")

        assert started == {"success": True, "auto_scrolling": True}
        assert page_agent.auto_scroller.speed == "slow"

        stopped = await controller.toggle_auto_scroll()

        assert stopped == {"success": True, "auto_scrolling": False}
        assert page_agent.auto_scroller.running is False

    @pytest.mark.asyncio
    async def test_failed_toggle_keeps_the_flag(self, hub):
        controller, _ = await _controller(hub, [httpx.Response(200, json=openai_reply("ok"))])

        result = await controller.toggle_auto_scroll()

        assert result["success"] is False
        assert controller.auto_scrolling is False


class TestInputHistory:
    def test_navigation_keeps_draft(self):
        history = InputHistory()
        history.record("one")
        history.record("two")

        assert history.up("draft") == "two"
        assert history.up() == "one"
        assert history.up() == "one"
        assert history.down() == "two"
        assert history.down() == "draft"
        assert history.down() is None

    def test_limit_and_duplicates(self):
        history = InputHistory(limit=3)
        for text in ["a", "b", "b", "c", "d"]:
            history.record(text)

        assert history.entries == ["d", "c", "b"]

    def test_empty_history(self):
        history = InputHistory()

        assert history.up("x") is None
        assert history.down() is None
