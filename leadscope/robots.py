"""robots.txt compliance, fetched once per origin and failing open."""

from __future__ import annotations

import urllib.robotparser
from typing import Dict, Optional

import httpx
import structlog

from .urls import origin

logger = structlog.get_logger(__name__)


class RobotsGuard:
    """Caches one parsed robots.txt per origin.

    A missing (4xx), failing (5xx) or unreachable robots.txt allows everything.
    """

    def __init__(self, client: httpx.AsyncClient, user_agent: str, timeout_s: float = 5.0) -> None:
        self._client = client
        self._user_agent = user_agent
        self._timeout_s = timeout_s
        self._cache: Dict[str, Optional[urllib.robotparser.RobotFileParser]] = {}

    async def _load(self, site_origin: str) -> Optional[urllib.robotparser.RobotFileParser]:
        robots_url = f"{site_origin}/robots.txt"
        try:
            response = await self._client.get(
                robots_url,
                headers={"User-Agent": self._user_agent},
                timeout=self._timeout_s,
                follow_redirects=True,
            )
        except httpx.HTTPError as exc:
            logger.info("robots_unreachable", url=robots_url, error=str(exc))
            return None
        if response.status_code >= 400:
            return None
        parser = urllib.robotparser.RobotFileParser()
        parser.parse(response.text.splitlines())
        return parser

    async def allowed(self, url: str) -> bool:
        site_origin = origin(url)
        if site_origin not in self._cache:
            self._cache[site_origin] = await self._load(site_origin)
        parser = self._cache[site_origin]
        if parser is None:
            return True
        return parser.can_fetch(self._user_agent, url)
