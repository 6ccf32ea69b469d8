"""
Page helpers - target URL, robots.txt, challenge detection, extraction cleanup

Pure functions plus the robots.txt fetch; nothing here touches Playwright.
"""
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlparse

import aiohttp
from loguru import logger

_URL_PATTERN = re.compile(r"https?://[^\s)]+", re.IGNORECASE)
_DOMAIN_PATTERN = re.compile(r"\b([a-z0-9-]+\.)+[a-z]{2,}\b", re.IGNORECASE)
_CHALLENGE_PATTERN = re.compile(
    r"cloudflare|attention required|cf-browser-verification|challenge-platform|cf-turnstile",
    re.IGNORECASE,
)
_EMAIL_PATTERN = re.compile(r"[a-z0-9._%+-]+@[a-z0-9.-]+\.[a-z]{2,}", re.IGNORECASE)
_UI_NOISE = re.compile(
    r"^(add to cart|quick view|view details|view product|choose options|select options|in stock|"
    r"out of stock|sold out|sale|new|buy now|learn more|load more|show more|filters?|sort by)$",
    re.IGNORECASE,
)

PRODUCT_NAMES = "product_names"
EMAILS = "emails"


def extract_target_url(prompt: Optional[str]) -> Optional[str]:
    """First explicit URL in the prompt, else the first bare domain as https."""
    if not prompt:
        return None
    match = _URL_PATTERN.search(prompt)
    if match:
        return match.group(0).rstrip(".,;:!?'\"")
    domain = _DOMAIN_PATTERN.search(prompt)
    if domain:
        return f"https://{domain.group(0)}"
    return None


def detect_challenge(*texts: Optional[str]) -> bool:
    return any(text and _CHALLENGE_PATTERN.search(text) for text in texts)


RobotsRules = Dict[str, List[Tuple[str, str]]]


def parse_robots_rules(robots_txt: str) -> RobotsRules:
    """User-agent -> [(allow|disallow, path)]"""
    rules: RobotsRules = {}
    current_agents: List[str] = []
    for raw_line in robots_txt.splitlines():
        line = raw_line.split("#", 1)[0].strip()
        if not line or ":" not in line:
            continue
        key, value = line.split(":", 1)
        key = key.strip().lower()
        value = value.strip()
        if key == "user-agent":
            agent = value.lower()
            current_agents = [agent] if agent else []
            for entry in current_agents:
                rules.setdefault(entry, [])
            continue
        if key in ("allow", "disallow") and current_agents:
            for agent in current_agents:
                rules.setdefault(agent, []).append((key, value))
    return rules


def evaluate_robots_rules(rules: List[Tuple[str, str]], path: str) -> bool:
    """Longest matching rule wins, allow wins ties; no match allows."""
    best: Optional[Tuple[str, str]] = None
    for rule_type, rule_path in rules:
        if not rule_path:
            if rule_type == "allow" and best is None:
                best = (rule_type, rule_path)
            continue
        if path.startswith(rule_path):
            if best is None or len(rule_path) > len(best[1]):
                best = (rule_type, rule_path)
            elif len(rule_path) == len(best[1]) and rule_type == "allow":
                best = (rule_type, rule_path)
    return best is None or best[0] != "disallow"


@dataclass
class RobotsVerdict:
    allowed: bool
    reason: Optional[str] = None


async def check_robots_txt(url: str, user_agent: str = "*", timeout_seconds: float = 10.0) -> RobotsVerdict:
    """
    Fetch and evaluate robots.txt for a URL.

    An unreachable or missing robots.txt allows the request.
    """
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        return RobotsVerdict(allowed=True, reason="invalid-url")
    robots_url = f"{parsed.scheme}://{parsed.netloc}/robots.txt"
    try:
        timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(robots_url) as response:
                if response.status != 200:
                    return RobotsVerdict(allowed=True, reason=f"robots.txt status {response.status}")
                content = await response.text()
    except Exception as e:
        logger.warning(f"🤖 [Robots] Could not load {robots_url}: {e}")
        return RobotsVerdict(allowed=True, reason="robots.txt unavailable")

    rules = parse_robots_rules(content)
    agent_rules = rules.get(user_agent.lower()) or rules.get("*") or []
    allowed = evaluate_robots_rules(agent_rules, parsed.path or "/")
    return RobotsVerdict(allowed=allowed, reason=None if allowed else "Blocked by robots.txt.")


def parse_extraction_request(prompt: Optional[str]) -> Optional[str]:
    """product_names / emails when the prompt asks for extraction, else None."""
    if not prompt:
        return None
    task_type_hint = bool(re.search(r"task type:\s*extract_info", prompt, re.IGNORECASE))
    wants_extraction = task_type_hint or bool(re.search(r"(extract|collect|find|list|get)\b", prompt, re.IGNORECASE))
    if not wants_extraction:
        return None
    if re.search(r"email", prompt, re.IGNORECASE):
        return EMAILS
    if re.search(r"product", prompt, re.IGNORECASE):
        return PRODUCT_NAMES
    return EMAILS if task_type_hint else None


def normalize_product_names(items: List[str]) -> List[str]:
    seen = set()
    names = []
    for item in items:
        cleaned = " ".join(str(item).split())
        if not cleaned or not re.search(r"[a-z]", cleaned, re.IGNORECASE):
            continue
        if re.fullmatch(r"[a-f0-9]{16,}", cleaned, re.IGNORECASE):
            continue
        if re.fullmatch(r"\$?\d+(?:\.\d+)?", cleaned) or _UI_NOISE.match(cleaned):
            continue
        key = cleaned.lower()
        if key in seen:
            continue
        seen.add(key)
        names.append(cleaned)
    return names


def normalize_email_candidates(items: List[str]) -> List[str]:
    seen = set()
    emails = []
    for item in items:
        cleaned = str(item).strip().lower()
        if not _EMAIL_PATTERN.fullmatch(cleaned) or cleaned in seen:
            continue
        seen.add(cleaned)
        emails.append(cleaned)
    return emails


def find_emails_in_text(text: str) -> List[str]:
    return normalize_email_candidates(_EMAIL_PATTERN.findall(text or ""))
