from __future__ import annotations
import asyncio, logging

import aiohttp

log = logging.getLogger("telegraph-publisher")


class LinkChecker:
    def __init__(self, http: aiohttp.ClientSession, origin: str = "https://telegra.ph", timeout: float = 10):
        self._http = http
        self.origin = origin.rstrip("/")
        self.timeout = timeout

    @property
    def prefix(self) -> str:
        return f"{self.origin}/file/"

    def looks_like_hosted_link(self, text: str) -> bool:
        t = (text or "").strip()
        return t.startswith(self.prefix) and len(t) > len(self.prefix) and not any(c.isspace() for c in t)

    async def check(self, url: str) -> bool:
        try:
            async with self._http.head(url, allow_redirects=True,
                                       timeout=aiohttp.ClientTimeout(total=self.timeout)) as resp:
                ok = resp.status == 200
                log.debug("HEALTH: %s -> %s", url, resp.status)
                return ok
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log.info("HEALTH: %s unreachable: %r", url, e)
            return False
