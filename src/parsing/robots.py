"""Robots.txt parsing and compliance checking.

Supports User-agent groups, Allow/Disallow with ``*`` and ``$`` patterns
(longest match wins, Allow wins ties), Crawl-delay and Sitemap lines.

Reference: https://www.rfc-editor.org/rfc/rfc9309
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Callable
from urllib.parse import urlparse

logger = logging.getLogger(__name__)


def _pattern_to_regex(pattern: str) -> re.Pattern[str]:
    anchored = pattern.endswith("$")
    body = pattern[:-1] if anchored else pattern
    regex = ".*".join(re.escape(part) for part in body.split("*"))
    return re.compile("^" + regex + ("$" if anchored else ""))


@dataclass(frozen=True)
class RobotRule:
    """A single Allow/Disallow line."""

    pattern: str
    allowed: bool

    def matches(self, path: str) -> bool:
        if not self.pattern:
            return False
        return bool(_pattern_to_regex(self.pattern).match(path))


@dataclass
class RobotGroup:
    """Rules shared by one or more user agents."""

    user_agents: list[str] = field(default_factory=list)
    rules: list[RobotRule] = field(default_factory=list)
    crawl_delay: float | None = None

    def is_allowed(self, path: str) -> bool:
        matching = [rule for rule in self.rules if rule.matches(path)]
        if not matching:
            return True
        best = max(matching, key=lambda rule: (len(rule.pattern), rule.allowed))
        return best.allowed


@dataclass
class RobotsTxt:
    groups: list[RobotGroup] = field(default_factory=list)
    sitemaps: list[str] = field(default_factory=list)

    def group_for(self, user_agent: str) -> RobotGroup | None:
        """Most specific group for ``user_agent``, falling back to ``*``."""
        agent = user_agent.lower()
        wildcard = None
        for group in self.groups:
            for name in group.user_agents:
                lowered = name.lower()
                if lowered == "*":
                    wildcard = wildcard or group
                elif lowered in agent:
                    return group
        return wildcard

    def is_allowed(self, url: str, user_agent: str = "*") -> bool:
        parsed = urlparse(url)
        path = parsed.path or "/"
        if parsed.query:
            path = f"{path}?{parsed.query}"
        group = self.group_for(user_agent)
        return group is None or group.is_allowed(path)

    def crawl_delay(self, user_agent: str = "*") -> float | None:
        group = self.group_for(user_agent)
        return group.crawl_delay if group else None


def parse_robots_txt(content: str) -> RobotsTxt:
    """Parse robots.txt content. Unknown directives are ignored."""
    robots = RobotsTxt()
    current: RobotGroup | None = None
    collecting_agents = False

    for raw_line in content.splitlines():
        line = raw_line.split("#", 1)[0].strip()
        if ":" not in line:
            continue
        directive, _, value = line.partition(":")
        directive = directive.strip().lower()
        value = value.strip()

        if directive == "user-agent":
            if current is None or not collecting_agents:
                current = RobotGroup()
                robots.groups.append(current)
            current.user_agents.append(value)
            collecting_agents = True
            continue

        collecting_agents = False
        if directive == "sitemap":
            if value:
                robots.sitemaps.append(value)
        elif current is None:
            continue
        elif directive in ("allow", "disallow"):
            current.rules.append(RobotRule(pattern=value, allowed=directive == "allow"))
        elif directive == "crawl-delay":
            try:
                current.crawl_delay = float(value)
            except ValueError:
                logger.debug("Ignoring invalid Crawl-delay: %r", value)

    return robots


class RobotsChecker:
    """Per-origin robots.txt cache.

    Args:
        fetch_text: Returns the body of a robots.txt URL, or None when the
            site has none (which allows everything).
        user_agent: Agent name rules are matched against.
    """

    def __init__(self, fetch_text: Callable[[str], str | None], user_agent: str = "*"):
        self._fetch_text = fetch_text
        self.user_agent = user_agent
        self._cache: dict[str, RobotsTxt | None] = {}

    @staticmethod
    def _origin(url: str) -> str:
        parsed = urlparse(url)
        return f"{parsed.scheme}://{parsed.netloc}"

    def robots_for(self, url: str) -> RobotsTxt | None:
        origin = self._origin(url)
        if origin not in self._cache:
            content = self._fetch_text(f"{origin}/robots.txt")
            self._cache[origin] = parse_robots_txt(content) if content else None
        return self._cache[origin]

    def is_allowed(self, url: str) -> bool:
        robots = self.robots_for(url)
        return robots is None or robots.is_allowed(url, self.user_agent)

    def crawl_delay(self, url: str) -> float | None:
        robots = self.robots_for(url)
        return robots.crawl_delay(self.user_agent) if robots else None
