"""
Playwright executor tests with a mocked browser manager and page
"""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest


def _page(url="about:blank", text="Example Domain", html="<html><body>Example Domain</body></html>", extracted=None):
    page = MagicMock()
    page.url = url

    async def goto(target, wait_until=None):
        page.url = target

    async def evaluate(script):
        if "innerText" in script:
            return text
        return extracted or []

    page.goto = AsyncMock(side_effect=goto)
    page.evaluate = AsyncMock(side_effect=evaluate)
    page.content = AsyncMock(return_value=html)
    page.title = AsyncMock(return_value="Example")
    page.screenshot = AsyncMock()
    return page


def _executor(tmp_path, page, ignore_robots_txt=False):
    from agent_engine.executors.playwright_executor import PlaywrightToolExecutor
    manager = MagicMock()
    manager.get_page = AsyncMock(return_value=page)
    manager.page = page
    manager.console_logs = [{"type": "log", "text": "ready"}]
    manager.close = AsyncMock()
    return PlaywrightToolExecutor(
        run_id="run-1", ignore_robots_txt=ignore_robots_txt, workdir=str(tmp_path), browser_manager=manager,
    )


def _request(prompt="Open https://example.com", extraction=False):
    from agent_engine.models import ToolRequest
    return ToolRequest(run_id="run-1", prompt=prompt, step_id="step-1", step_title="Open the page", extraction=extraction)


class TestFullMode:

    @pytest.mark.asyncio
    async def test_navigates_and_snapshots(self, tmp_path):
        from agent_engine.executors.playwright_executor.page_utils import RobotsVerdict
        from agent_engine.models import ToolKind
        page = _page()
        executor = _executor(tmp_path, page)

        with patch(
            "agent_engine.executors.playwright_executor.executor.check_robots_txt",
            AsyncMock(return_value=RobotsVerdict(allowed=True)),
        ) as robots:
            result = await executor.invoke(ToolKind.FULL, _request())

        assert result.ok is True
        assert result.output.url == "https://example.com"
        assert result.output.log_count == 1
        robots.assert_awaited_once_with("https://example.com")
        page.goto.assert_awaited_once()
        assert list((tmp_path / "run-1").glob("snapshot-*.html"))
        summary = await executor.context_summary()
        assert summary["url"] == "https://example.com"
        assert summary["domTextSample"] == "Example Domain"

    @pytest.mark.asyncio
    async def test_robots_block(self, tmp_path):
        from agent_engine.executors.playwright_executor.page_utils import RobotsVerdict
        from agent_engine.models import ToolKind
        page = _page()
        executor = _executor(tmp_path, page)

        with patch(
            "agent_engine.executors.playwright_executor.executor.check_robots_txt",
            AsyncMock(return_value=RobotsVerdict(allowed=False, reason="Blocked by robots.txt.")),
        ):
            result = await executor.invoke(ToolKind.FULL, _request())

        assert result.ok is False
        assert result.error == "Blocked by robots.txt."
        page.goto.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_ignore_robots_skips_check(self, tmp_path):
        from agent_engine.models import ToolKind
        executor = _executor(tmp_path, _page(), ignore_robots_txt=True)

        with patch("agent_engine.executors.playwright_executor.executor.check_robots_txt", AsyncMock()) as robots:
            result = await executor.invoke(ToolKind.FULL, _request())

        assert result.ok is True
        robots.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_same_host_does_not_navigate_again(self, tmp_path):
        from agent_engine.models import ToolKind
        page = _page(url="https://www.example.com/catalogue")
        executor = _executor(tmp_path, page)

        result = await executor.invoke(ToolKind.FULL, _request())

        assert result.ok is True
        page.goto.assert_not_awaited()
        assert result.output.url == "https://www.example.com/catalogue"

    @pytest.mark.asyncio
    async def test_no_target_on_blank_page(self, tmp_path):
        from agent_engine.models import ToolKind
        executor = _executor(tmp_path, _page())

        result = await executor.invoke(ToolKind.FULL, _request(prompt="Tell me something nice"))

        assert result.ok is False
        assert result.error == "No target URL found in the prompt."

    @pytest.mark.asyncio
    async def test_challenge_page_requires_human(self, tmp_path):
        from agent_engine.executors.playwright_executor.executor import CHALLENGE_ERROR
        from agent_engine.models import ToolKind
        page = _page(url="https://example.com/", text="Just a moment...", html="<div class='cf-turnstile'></div>")
        executor = _executor(tmp_path, page)

        result = await executor.invoke(ToolKind.FULL, _request())

        assert result.ok is False
        assert result.error == CHALLENGE_ERROR
        assert result.output.url == "https://example.com/"

    @pytest.mark.asyncio
    async def test_extraction_returns_clean_product_names(self, tmp_path):
        from agent_engine.models import ToolKind
        page = _page(url="https://example.com/", extracted=["Blue Socks", "Add to cart", "blue socks", "Red Hat"])
        executor = _executor(tmp_path, page)

        result = await executor.invoke(
            ToolKind.FULL, _request(prompt="Collect the product names on https://example.com/", extraction=True),
        )

        assert result.output.extracted == ["Blue Socks", "Red Hat"]

    @pytest.mark.asyncio
    async def test_email_extraction_falls_back_to_page_text(self, tmp_path):
        from agent_engine.models import ToolKind
        page = _page(url="https://example.com/", text="Contact: Team@Example.com", extracted=[])
        executor = _executor(tmp_path, page)

        result = await executor.invoke(
            ToolKind.FULL, _request(prompt="Find the email on https://example.com/", extraction=True),
        )

        assert result.output.extracted == ["team@example.com"]

    @pytest.mark.asyncio
    async def test_browser_error_becomes_failed_result(self, tmp_path):
        from agent_engine.models import ToolKind
        page = _page()
        page.goto = AsyncMock(side_effect=TimeoutError("navigation timeout"))
        executor = _executor(tmp_path, page, ignore_robots_txt=True)

        result = await executor.invoke(ToolKind.FULL, _request())

        assert result.ok is False
        assert "navigation timeout" in result.error


class TestObserveMode:

    @pytest.mark.asyncio
    async def test_observe_without_page_fails(self, tmp_path):
        from agent_engine.models import ToolKind
        executor = _executor(tmp_path, _page())
        executor.browser_manager.page = None

        result = await executor.invoke(ToolKind.OBSERVE, _request())

        assert result.ok is False
        assert result.error == "No open page to observe."

    @pytest.mark.asyncio
    async def test_observe_snapshots_current_page(self, tmp_path):
        from agent_engine.models import ToolKind
        page = _page(url="https://example.com/list")
        executor = _executor(tmp_path, page)

        result = await executor.invoke(ToolKind.OBSERVE, _request())

        assert result.ok is True
        assert result.output.url == "https://example.com/list"
        page.goto.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_close_releases_browser(self, tmp_path):
        executor = _executor(tmp_path, _page())
        await executor.close()
        executor.browser_manager.close.assert_awaited_once()
