"""robots.txt rules used to exclude pages before extraction.

Rule evaluation follows the longest-match convention: the longest matching
Allow or Disallow path wins, and Allow wins a tie.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urljoin

import requests

from ..config import DEFAULT_USER_AGENT

logger = logging.getLogger(__name__)

ROBOTS_AGENT = "sitescribe"


@dataclass
class RobotsRules:
    disallow: list[str] = field(default_factory=list)
    allow: list[str] = field(default_factory=list)
    sitemaps: list[str] = field(default_factory=list)

    def is_blocked(self, url_path: str) -> bool:
        longest_disallow = max((p for p in self.disallow if url_path.startswith(p)), key=len, default="")
        if not longest_disallow:
            return False

        longest_allow = max((p for p in self.allow if url_path.startswith(p)), key=len, default="")
        return len(longest_allow) < len(longest_disallow)


def parse_robots_txt(content: str, user_agent: str = ROBOTS_AGENT) -> RobotsRules:
    """Parse robots.txt for our user agent, falling back to the ``*`` group.

    Args:
        content: robots.txt body
        user_agent: Agent token to look for before falling back to ``*``

    Returns:
        Rules for the selected group (plus every Sitemap line in the file)
    """
    groups: dict[str, RobotsRules] = {}
    current_agents: list[str] = []
    in_rules = False
    sitemaps: list[str] = []

    for raw_line in content.splitlines():
        line = raw_line.split("#", 1)[0].strip()
        if not line or ":" not in line:
            continue

        directive, value = (part.strip() for part in line.split(":", 1))
        directive = directive.lower()

        if directive == "user-agent":
            # A user-agent line after rules starts a new group
            if in_rules:
                current_agents = []
                in_rules = False
            agent = value.lower()
            current_agents.append(agent)
            groups.setdefault(agent, RobotsRules())
        elif directive in ("allow", "disallow"):
            in_rules = True
            if not value:
                continue
            for agent in current_agents:
                getattr(groups[agent], directive).append(value)
        elif directive == "sitemap":
            sitemaps.append(value)
        else:
            current_agents = []
            in_rules = False

    specific = groups.get(user_agent.lower())
    if specific is not None and (specific.disallow or specific.allow):
        rules = specific
    else:
        rules = groups.get("*", RobotsRules())

    return RobotsRules(disallow=list(rules.disallow), allow=list(rules.allow), sitemaps=sitemaps)


def load_robots_from_dir(directory: Path) -> RobotsRules | None:
    """Read robots.txt from a build output directory, if present."""
    robots_file = Path(directory) / "robots.txt"
    if not robots_file.is_file():
        return None
    logger.info(f"[ROBOTS] Loaded {robots_file}")
    return parse_robots_txt(robots_file.read_text(encoding="utf-8", errors="replace"))


def fetch_robots(base_url: str, user_agent: str = DEFAULT_USER_AGENT, timeout: float = 10.0) -> RobotsRules | None:
    """Fetch and parse <base_url>/robots.txt. Returns None when unavailable."""
    robots_url = urljoin(base_url, "/robots.txt")
    try:
        response = requests.get(robots_url, headers={"User-Agent": user_agent}, timeout=timeout)
        response.raise_for_status()
    except requests.exceptions.HTTPError as e:
        if e.response is not None and e.response.status_code == 404:
            logger.debug(f"[ROBOTS] No robots.txt found at {robots_url} (404)")
        else:
            logger.debug(f"[ROBOTS] Failed to load robots.txt from {robots_url}: {e}")
        return None
    except requests.RequestException as e:
        logger.debug(f"[ROBOTS] Failed to load robots.txt from {robots_url}: {e}")
        return None

    rules = parse_robots_txt(response.text)
    logger.info(f"[ROBOTS] Loaded robots.txt from {robots_url} ({len(rules.disallow)} disallow rules)")
    return rules
