"""Tests for the page agent: reading, locating, marking, scrolling, narration steps."""

from __future__ import annotations

import asyncio

import pytest

from conftest import SCREENSHOT, wait_until
from weblm.hub.messages import RequestKind, fail, ok
from weblm.page.agent import EXPLAIN_PAGE_QUESTION, PageAgent, ease_in_out_cubic
from weblm.page.annotations import MARK_HIGHLIGHT, MARK_UNDERLINE
from weblm.page.document import PageDocument

LONG_HTML = "<body>" + "".join(f"<p>Paragraph number {index}</p>" for index in range(40)) + "</body>"


def _long_agent(hub, **kwargs):
    document = PageDocument.from_html(LONG_HTML, url="https://example.com/long", viewport_height=200)
    agent = PageAgent(hub, document, window_id=2, context_id="page-2", **kwargs)
    hub.register_context(agent)
    return agent


class TestReading:
    def test_visible_text_skips_hidden_script_and_style(self, page_agent):
        text = page_agent.extract_visible_text()

        assert text.splitlines() == [
            "Home",
            "Docs",
            "Getting started with widgets",
            "Widgets are small reusable parts of a page.",
            "Save",
            "Installation",
            "Install the widget package before anything else.",
            "Configuration",
            "Configuration lives in a single file.",
        ]
        assert "Secret" not in text
        assert "tracking" not in text
        assert "color" not in text

    def test_visible_text_is_cut_to_limit(self, page_agent):
        assert page_agent.extract_visible_text(limit=10) == "Home\nDocs\n"

    @pytest.mark.asyncio
    async def test_page_text_request(self, hub, page_agent):
        result = await hub.submit(RequestKind.GET_PAGE_TEXT, {"window_id": 1})

        assert result["success"] is True
        assert result["url"] == "https://example.com/guide"
        assert result["text"].startswith("Home\nDocs")

    @pytest.mark.asyncio
    async def test_unknown_relay_kind_is_refused(self, page_agent):
        result = await page_agent.handle_request("SOMETHING_ELSE", {})

        assert result["success"] is False


class TestLocateElement:
    @pytest.mark.parametrize(
        "description, tag",
        [
            ("Main Navigation", "nav"),
            ("save your work", "button"),
            ("installation", "h2"),
            ("widgets", "h1"),
            ("single file", "p"),
        ],
    )
    def test_priority_order(self, page_agent, description, tag):
        element = page_agent.locate_element(description)

        assert element is not None
        assert element.tag == tag

    def test_hidden_and_missing_text_is_not_found(self, page_agent):
        assert page_agent.locate_element("secret hidden text") is None
        assert page_agent.locate_element("   ") is None

    def test_own_overlay_is_never_matched(self, page_agent):
        page_agent.overlay.ensure()

        assert page_agent.locate_element("open weblm side panel") is None


class TestAnnotations:
    @pytest.mark.asyncio
    async def test_markers_resolved_on_the_page(self, page_agent):
        marked = await page_agent.handle_annotations("See [mark: Installation] then [标注：Save your work].")

        assert marked == 2
        marks = page_agent.annotations.marks
        assert [mark.label for mark in marks] == ["Installation", "Save your work"]
        assert all(mark.kind == MARK_HIGHLIGHT and mark.pulse for mark in marks)
        assert marks[0].element.tag == "h2"

    @pytest.mark.asyncio
    async def test_unresolved_marker_asks_the_model(self, hub, page_agent):
        requests = []

        async def capture(payload, sender):
            return ok(screenshot=SCREENSHOT)

        async def locate(payload, sender):
            requests.append(payload)
            return ok(
                result={
                    "elements": [
                        {
                            "description": "company logo",
                            "approximate_position": {
                                "x_percent": 10,
                                "y_percent": 50,
                                "width_percent": 10,
                                "height_percent": 20,
                            },
                        }
                    ]
                }
            )

        hub.register_handler(RequestKind.CAPTURE_VIEWPORT, capture)
        hub.register_handler(RequestKind.LOCATE_ELEMENTS, locate)

        marked = await page_agent.handle_annotations("The [mark: company logo] sits top left.")

        assert marked == 1
        assert requests[0]["screenshot"] == SCREENSHOT
        assert requests[0]["description"] == "company logo"
        rect = page_agent.annotations.marks[0].rect
        assert rect.left == pytest.approx(128 - 64)
        assert rect.top == pytest.approx(100 - 20)
        assert rect.height == pytest.approx(40)

    @pytest.mark.asyncio
    async def test_failing_marker_is_skipped(self, page_agent):
        marked = await page_agent.handle_annotations("[mark: not on this page] and [mark: Installation]")

        assert marked == 1
        assert len(page_agent.annotations.marks) == 1

    @pytest.mark.asyncio
    async def test_annotation_request_through_hub(self, hub, page_agent):
        result = await hub.submit(RequestKind.HANDLE_ANNOTATIONS, {"window_id": 1, "text": "[mark: Configuration]"})

        assert result == {"success": True, "marked": 1}

    def test_clear_marks(self, page_agent):
        element = page_agent.locate_element("installation")
        page_agent.highlight(element)
        page_agent.underline(element)

        assert page_agent.clear_marks() == 2
        assert page_agent.annotations.marks == []


class TestScrolling:
    @pytest.mark.asyncio
    async def test_percent_targets_are_clamped(self, hub):
        agent = _long_agent(hub, scroll_duration=0)

        info = await agent.scroll_to(150)
        assert agent.document.scroll_y == agent.document.max_scroll
        assert info.scroll_percent == pytest.approx(100.0)
        assert info.has_more_content is False

        await agent.scroll_to(-20)
        assert agent.document.scroll_y == 0

        await agent.scroll_to(50.0)
        assert agent.document.scroll_y == pytest.approx(agent.document.max_scroll / 2)

    @pytest.mark.asyncio
    async def test_offsets_are_clamped(self, hub):
        agent = _long_agent(hub, scroll_duration=0)

        await agent.scroll_to_offset(10_000)
        assert agent.document.scroll_y == agent.document.max_scroll

        await agent.scroll_to_offset(-10)
        assert agent.document.scroll_y == 0

    @pytest.mark.asyncio
    async def test_page_scroll_keeps_overlap(self, hub):
        agent = _long_agent(hub, scroll_duration=0)

        info = await agent.scroll_page("down")
        assert info.scroll_y == 100
        assert info.has_more_content is True

        info = await agent.scroll_page("up")
        assert info.scroll_y == 0

    @pytest.mark.asyncio
    async def test_smooth_scroll_ends_on_target(self, hub):
        agent = _long_agent(hub, scroll_duration=0.02, frame_interval=0.005)
        positions = []
        original = agent.document.set_scroll

        def record(y):
            positions.append(original(y))
            return positions[-1]

        agent.document.set_scroll = record

        await agent.scroll_to_offset(300)

        assert positions[-1] == 300
        assert positions == sorted(positions)
        assert len(positions) == 4

    def test_easing_endpoints(self):
        assert ease_in_out_cubic(0.0) == 0.0
        assert ease_in_out_cubic(0.5) == pytest.approx(0.5)
        assert ease_in_out_cubic(1.0) == 1.0


class TestLectureSteps:
    @pytest.mark.asyncio
    async def test_found_anchor_is_centered_and_underlined(self, hub):
        agent = _long_agent(hub, scroll_duration=0)

        result = await agent.prepare_lecture_step(
            {
                "token": agent.begin_lecture(),
                "anchor_text": "paragraph number 20",
                "last_anchor_offset": -1,
                "fallback_scroll_percent": 0,
            }
        )

        assert result == {"success": True, "found": True, "offset": 480.0}
        assert agent.document.scroll_y == pytest.approx(480 - 100 + 12)
        marks = agent.annotations.marks
        assert len(marks) == 1 and marks[0].kind == MARK_UNDERLINE

    @pytest.mark.asyncio
    async def test_forward_bias_skips_earlier_matches(self, hub):
        agent = _long_agent(hub, scroll_duration=0)

        result = await agent.prepare_lecture_step(
            {"token": agent.begin_lecture(), "anchor_text": "paragraph number 3", "last_anchor_offset": 72.0}
        )

        # "Paragraph number 3" sits at 72; the next forward match is "...30".
        assert result["offset"] == 720.0

    @pytest.mark.asyncio
    async def test_no_forward_match_uses_nearest_to_center(self, hub):
        agent = _long_agent(hub, scroll_duration=0)
        agent.document.set_scroll(600)

        result = await agent.prepare_lecture_step(
            {"token": agent.begin_lecture(), "anchor_text": "paragraph number 1", "last_anchor_offset": 900.0}
        )

        # Matches are 1 and 10..19; 19 (at 456) is closest to the center at 700.
        assert result["offset"] == 456.0

    @pytest.mark.asyncio
    async def test_missing_anchor_scrolls_to_fallback(self, hub):
        agent = _long_agent(hub, scroll_duration=0)

        token = agent.begin_lecture()
        result = await agent.prepare_lecture_step(
            {"token": token, "anchor_text": "absent", "fallback_scroll_percent": 100}
        )

        assert result == {"success": True, "found": False, "offset": None}
        assert agent.document.scroll_y == agent.document.max_scroll
        assert agent.annotations.marks == []

    @pytest.mark.asyncio
    async def test_superseded_token_is_a_no_op(self, hub):
        agent = _long_agent(hub, scroll_duration=0)
        old = agent.begin_lecture()
        current = agent.begin_lecture()
        await agent.prepare_lecture_step({"token": current, "anchor_text": "paragraph number 25"})
        before = agent.document.scroll_y

        result = await agent.prepare_lecture_step({"token": old, "anchor_text": "paragraph number 39"})

        assert result["stale"] is True
        assert before > 0
        assert agent.document.scroll_y == before
        assert len(agent.annotations.marks) == 1

    @pytest.mark.asyncio
    async def test_begin_is_issued_through_the_hub(self, hub):
        agent = _long_agent(hub, scroll_duration=0)

        first = await hub.submit(RequestKind.LECTURE_BEGIN, {"window_id": 2})
        second = await hub.submit(RequestKind.LECTURE_BEGIN, {"window_id": 2})

        assert first == {"success": True, "token": 1}
        assert second == {"success": True, "token": 2}
        stale = await agent.prepare_lecture_step({"token": first["token"], "anchor_text": "paragraph number 5"})
        assert stale["stale"] is True

    @pytest.mark.asyncio
    async def test_clear_honors_token(self, hub):
        agent = _long_agent(hub, scroll_duration=0)
        old = agent.begin_lecture()
        token = agent.begin_lecture()
        await agent.prepare_lecture_step({"token": token, "anchor_text": "paragraph number 5"})

        stale = await hub.submit(RequestKind.LECTURE_CLEAR, {"window_id": 2, "token": old})
        current = await hub.submit(RequestKind.LECTURE_CLEAR, {"window_id": 2, "token": token})

        assert stale == {"success": True, "cleared": False}
        assert current == {"success": True, "cleared": True}
        assert agent.annotations.marks == []

    @pytest.mark.asyncio
    async def test_ending_clear_retires_the_token(self, hub):
        agent = _long_agent(hub, scroll_duration=0)
        token = agent.begin_lecture()
        await agent.prepare_lecture_step({"token": token, "anchor_text": "paragraph number 5"})

        assert agent.clear_lecture_mark(token, end=True) is True
        result = await agent.prepare_lecture_step({"token": token, "anchor_text": "paragraph number 9"})

        assert result["stale"] is True
        assert agent.annotations.marks == []

    @pytest.mark.asyncio
    async def test_untokened_step_is_not_fenced(self, hub):
        agent = _long_agent(hub, scroll_duration=0)
        agent.begin_lecture()

        result = await agent.prepare_lecture_step({"anchor_text": "paragraph number 5"})

        assert result["found"] is True
        assert len(agent.annotations.marks) == 1


class TestAutoScroll:
    @pytest.mark.asyncio
    async def test_scrolls_steadily_and_stops_at_the_end(self, hub):
        agent = _long_agent(hub, scroll_duration=0, frame_interval=0.001)
        agent.document.set_scroll(agent.document.max_scroll - 10)
        finished = []
        agent.auto_scroller.on_complete = lambda: finished.append(agent.document.scroll_y)

        result = await hub.submit(RequestKind.START_AUTO_SCROLL, {"window_id": 2, "speed": "fast"})

        assert result == {"success": True, "speed": "fast"}
        await wait_until(lambda: not agent.auto_scroller.running)
        assert agent.document.scroll_y == agent.document.max_scroll
        assert finished == [agent.document.max_scroll]

    @pytest.mark.asyncio
    async def test_stop_holds_the_position(self, hub):
        agent = _long_agent(hub, scroll_duration=0, frame_interval=0.001)

        await agent.start_auto_scroll("slow")
        await wait_until(lambda: agent.document.scroll_y >= 5)
        stopped = await hub.submit(RequestKind.STOP_AUTO_SCROLL, {"window_id": 2})
        held = agent.document.scroll_y
        for _ in range(10):
            await asyncio.sleep(0.002)

        assert stopped == {"success": True}
        assert agent.auto_scroller.running is False
        assert 0 < held < agent.document.max_scroll
        assert agent.document.scroll_y == held

    @pytest.mark.asyncio
    async def test_unknown_speed_runs_at_normal(self, hub):
        agent = _long_agent(hub, scroll_duration=0, frame_interval=0.001)

        await agent.start_auto_scroll("warp")
        await agent.stop_auto_scroll()

        assert agent.auto_scroller.speed == "normal"
        assert agent.auto_scroller.step == 2.0


class TestEntryPoints:
    @pytest.mark.asyncio
    async def test_open_panel_hides_button_on_success(self, hub, page_agent):
        async def open_panel(payload, sender):
            return ok()

        hub.register_handler(RequestKind.OPEN_SIDE_PANEL, open_panel)
        button = page_agent.overlay.ensure()

        result = await page_agent.open_panel()

        assert result["success"] is True
        assert button.get_style("display") == "none"

    @pytest.mark.asyncio
    async def test_open_panel_failure_keeps_button(self, hub, page_agent):
        async def open_panel(payload, sender):
            return fail("needs_user_gesture")

        hub.register_handler(RequestKind.OPEN_SIDE_PANEL, open_panel)
        button = page_agent.overlay.ensure()

        result = await page_agent.open_panel()

        assert result == {"success": False, "error": "needs_user_gesture"}
        assert button.get_style("display") == "flex"

    @pytest.mark.asyncio
    async def test_explain_page_asks_even_if_open_fails(self, hub, page_agent):
        asks = []

        async def ask(payload, sender):
            asks.append((payload, sender))
            return ok()

        hub.register_handler(RequestKind.SIDE_PANEL_ASK, ask)

        await page_agent.explain_page()
        await page_agent.explain_selection("widgets are small")

        assert asks[0][0]["question"] == EXPLAIN_PAGE_QUESTION
        assert "widgets are small" in asks[1][0]["question"]
        assert asks[0][1].window_id == 1

    @pytest.mark.asyncio
    async def test_panel_state_event_toggles_button(self, hub, page_agent):
        button = page_agent.overlay.ensure()

        await hub.broadcast("SIDE_PANEL_STATE_CHANGED", {"is_open": True}, window_id=1)
        assert button.get_style("display") == "none"

        await hub.broadcast("SIDE_PANEL_STATE_CHANGED", {"is_open": False}, window_id=1)
        assert button.get_style("display") == "flex"

    @pytest.mark.asyncio
    async def test_client_side_navigation_clears_marks(self, hub, page_document):
        agent = PageAgent(hub, page_document, window_id=1, context_id="page-nav", scroll_duration=0)
        await agent.start()
        try:
            agent.highlight(agent.locate_element("installation"))

            page_document.history.push_state("https://example.com/other")

            assert agent.annotations.marks == []
            assert agent.location.last_url == "https://example.com/other"
            assert page_document.get_element_by_id("pe-floating-btn") is not None
        finally:
            await agent.stop()
