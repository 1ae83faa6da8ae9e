from __future__ import annotations

import asyncio
import logging
import socket
import urllib.error
import urllib.request
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class PageCheck:
    url: str
    errors: list[str] = field(default_factory=list)
    screenshot: str | None = None
    console_errors: int = 0


@dataclass(slots=True)
class BrowserReport:
    errors: list[str] = field(default_factory=list)
    screenshots: list[str] = field(default_factory=list)
    urls_tested: list[str] = field(default_factory=list)
    console_error_count: int = 0
    used_http_fallback: bool = False

    @property
    def passed(self) -> bool:
        return not self.errors


class BrowserService(Protocol):
    """A browser automation service able to load a page and report console errors."""

    async def available(self) -> bool:
        ...

    async def check_page(self, url: str) -> PageCheck:
        ...


def _is_connection_refused(reason: object) -> bool:
    if isinstance(reason, ConnectionRefusedError):
        return True
    return "refused" in str(reason).lower()


def http_check(url: str, timeout_seconds: float = 10.0) -> PageCheck:
    """GET the page and report non-2xx or transport errors."""
    request = urllib.request.Request(url, method="GET")
    try:
        with urllib.request.urlopen(request, timeout=timeout_seconds) as response:
            status = response.status
            if not 200 <= status < 300:
                return PageCheck(url=url, errors=[f"HTTP {status}: {response.reason}"])
    except urllib.error.HTTPError as exc:
        return PageCheck(url=url, errors=[f"HTTP {exc.code}: {exc.reason}"])
    except urllib.error.URLError as exc:
        if isinstance(exc.reason, TimeoutError | socket.timeout):
            return PageCheck(url=url, errors=[f"Request timed out after {timeout_seconds:g}s"])
        if _is_connection_refused(exc.reason):
            return PageCheck(url=url, errors=["Connection refused - is the server running?"])
        return PageCheck(url=url, errors=[f"Request failed: {exc.reason}"])
    except TimeoutError:
        return PageCheck(url=url, errors=[f"Request timed out after {timeout_seconds:g}s"])
    except ConnectionRefusedError:
        return PageCheck(url=url, errors=["Connection refused - is the server running?"])
    return PageCheck(url=url)


async def run_browser_checks(
    urls: Sequence[str],
    *,
    service: BrowserService | None = None,
    timeout_seconds: float = 10.0,
) -> BrowserReport:
    report = BrowserReport()
    use_service = False
    if service is not None:
        try:
            use_service = await service.available()
        except Exception as exc:
            LOGGER.warning("Browser service status check failed: %s", exc)
            use_service = False
    report.used_http_fallback = not use_service
    if not use_service:
        LOGGER.info("Browser service unavailable; falling back to HTTP checks")

    for url in urls:
        if use_service and service is not None:
            try:
                page = await service.check_page(url)
            except Exception as exc:
                page = PageCheck(url=url, errors=[f"Browser check failed: {exc}"])
        else:
            page = await asyncio.to_thread(http_check, url, timeout_seconds)
        report.urls_tested.append(url)
        report.errors.extend(f"{url}: {error}" for error in page.errors)
        report.console_error_count += page.console_errors
        if page.screenshot:
            report.screenshots.append(page.screenshot)
    return report
