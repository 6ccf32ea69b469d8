"""
Playwright executor - browser tool for agent runs

full mode:
1. Resolve the target URL from the prompt
2. Check robots.txt (unless the run ignores it)
3. Navigate, detect challenge pages
4. Extract product names / e-mails for extraction steps
5. Snapshot (screenshot + DOM) into the run working directory

observe mode only snapshots the current page.
"""
import re
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from loguru import logger

from config import settings
from agent_engine.executors.base import ToolExecutor
from agent_engine.executors.playwright_executor.browser_manager import BrowserManager
from agent_engine.executors.playwright_executor.page_utils import (
    EMAILS,
    check_robots_txt,
    detect_challenge,
    extract_target_url,
    find_emails_in_text,
    normalize_email_candidates,
    normalize_product_names,
    parse_extraction_request,
)
from agent_engine.models import ToolKind, ToolOutput, ToolRequest, ToolResult, new_id

CHALLENGE_ERROR = "Cloudflare challenge detected; requires human verification."
DOM_SAMPLE_CHARS = 4000
CONTEXT_LOG_LIMIT = 20

_PRODUCT_NAMES_JS = """
() => {
  const selectors = ["[data-product-name]", "[itemtype*='Product'] [itemprop='name']",
    ".product-title", ".product-name", ".product-card h2", ".product-card h3",
    ".product-item h2", ".product-item h3", "article h2", "article h3"];
  const names = [];
  for (const selector of selectors) {
    document.querySelectorAll(selector).forEach((node) => {
      const text = (node.textContent || "").replace(/\\s+/g, " ").trim();
      if (text.length >= 3 && text.length <= 140) names.push(text);
    });
  }
  return names;
}
"""

_EMAILS_JS = """
() => {
  const emails = [];
  document.querySelectorAll("a[href^='mailto:']").forEach((link) => {
    const href = link.getAttribute("href") || "";
    const email = href.replace(/^mailto:/i, "").split("?")[0].trim();
    if (email) emails.push(email);
  });
  document.querySelectorAll("[data-email], [data-mail], [data-contact]").forEach((node) => {
    const value = node.getAttribute("data-email") || node.getAttribute("data-mail") || node.getAttribute("data-contact") || "";
    if (value.includes("@")) value.split(/[,\\s]+/).filter(Boolean).forEach((item) => emails.push(item));
  });
  return emails;
}
"""


def _hostname(url: Optional[str]) -> str:
    if not url:
        return ""
    host = urlparse(url).hostname or ""
    return re.sub(r"^www\.", "", host.lower())


class PlaywrightToolExecutor(ToolExecutor):
    """
    Playwright browser tool for one run

    Args:
        run_id: owning run
        browser_name / headless: launch options
        ignore_robots_txt: skip the robots.txt check
        workdir: base directory; snapshots go to <workdir>/<run_id>
    """

    def __init__(
        self,
        run_id: str,
        browser_name: Optional[str] = None,
        headless: Optional[bool] = None,
        ignore_robots_txt: bool = False,
        workdir: Optional[str] = None,
        browser_manager: Optional[BrowserManager] = None,
    ) -> None:
        self.run_id = run_id
        self.ignore_robots_txt = ignore_robots_txt
        self.run_dir = Path(workdir or settings.agent_workdir) / run_id
        self.browser_manager = browser_manager or BrowserManager(browser_name, headless)
        self._last_snapshot: Optional[Dict[str, Any]] = None

    async def invoke(self, kind: ToolKind, request: ToolRequest) -> ToolResult:
        logger.info(f"🌐 [PlaywrightExecutor] run={self.run_id} {kind.value}: {request.step_title}")
        try:
            if kind == ToolKind.OBSERVE:
                return await self._observe(request)
            return await self._full(request)
        except Exception as e:
            logger.error(f"❌ [PlaywrightExecutor] run={self.run_id} step={request.step_id} failed: {e}")
            return ToolResult(ok=False, error=f"Browser automation failed: {e}")

    async def _full(self, request: ToolRequest) -> ToolResult:
        page = await self.browser_manager.get_page()
        target = extract_target_url(request.prompt)
        current = page.url
        if target and _hostname(current) != _hostname(target):
            if not self.ignore_robots_txt:
                verdict = await check_robots_txt(target)
                if not verdict.allowed:
                    logger.warning(f"🤖 [PlaywrightExecutor] Blocked by robots.txt: {target}")
                    return ToolResult(ok=False, error="Blocked by robots.txt.")
            await page.goto(target, wait_until="domcontentloaded")
        elif not target and (not current or current == "about:blank"):
            return ToolResult(ok=False, error="No target URL found in the prompt.")

        snapshot = await self._snapshot(page, request.step_title)
        if snapshot["challenge"]:
            return ToolResult(ok=False, error=CHALLENGE_ERROR, output=self._output(snapshot))

        extracted: List[str] = []
        if request.extraction:
            extracted = await self._extract(page, request.prompt, snapshot["dom_text"])
            logger.info(f"🔎 [PlaywrightExecutor] Extracted {len(extracted)} item(s)")
        return ToolResult(ok=True, output=self._output(snapshot, extracted))

    async def _observe(self, request: ToolRequest) -> ToolResult:
        page = self.browser_manager.page
        if page is None:
            return ToolResult(ok=False, error="No open page to observe.")
        snapshot = await self._snapshot(page, request.step_title)
        if snapshot["challenge"]:
            return ToolResult(ok=False, error=CHALLENGE_ERROR, output=self._output(snapshot))
        return ToolResult(ok=True, output=self._output(snapshot))

    async def _extract(self, page, prompt: str, dom_text: str) -> List[str]:
        kind = parse_extraction_request(prompt)
        if kind == EMAILS:
            emails = normalize_email_candidates(await page.evaluate(_EMAILS_JS))
            return emails or find_emails_in_text(dom_text)
        return normalize_product_names(await page.evaluate(_PRODUCT_NAMES_JS))

    async def _snapshot(self, page, label: str) -> Dict[str, Any]:
        self.run_dir.mkdir(parents=True, exist_ok=True)
        snapshot_id = new_id()
        safe_label = re.sub(r"[^a-z0-9_-]", "_", label.lower())[:40]
        html = await page.content()
        text = await page.evaluate(
            "() => (document.body && document.body.innerText) || document.documentElement.innerText || ''"
        )
        title = await page.title()
        await page.screenshot(path=str(self.run_dir / f"snapshot-{snapshot_id}-{safe_label}.png"), full_page=True)
        (self.run_dir / f"snapshot-{snapshot_id}.html").write_text(html, encoding="utf-8")

        challenge = detect_challenge(text, html)
        if challenge:
            logger.warning(f"🛑 [PlaywrightExecutor] Challenge page detected at {page.url}")
        self._last_snapshot = {
            "snapshot_id": snapshot_id,
            "url": page.url,
            "title": title,
            "dom_text": text,
            "challenge": challenge,
        }
        return self._last_snapshot

    def _output(self, snapshot: Dict[str, Any], extracted: Optional[List[str]] = None) -> ToolOutput:
        return ToolOutput(
            snapshot_id=snapshot["snapshot_id"],
            url=snapshot["url"],
            title=snapshot["title"],
            log_count=len(self.browser_manager.console_logs),
            extracted=extracted or [],
        )

    async def context_summary(self) -> Optional[Dict[str, Any]]:
        if self._last_snapshot is None:
            return None
        return {
            "url": self._last_snapshot["url"],
            "title": self._last_snapshot["title"],
            "domTextSample": self._last_snapshot["dom_text"][:DOM_SAMPLE_CHARS],
            "logs": self.browser_manager.console_logs[-CONTEXT_LOG_LIMIT:],
        }

    async def close(self) -> None:
        await self.browser_manager.close()
