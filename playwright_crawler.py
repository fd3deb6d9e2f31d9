#!/usr/bin/env python3
"""
Playwright-based request crawler for JavaScript-rendered search pages.

This module provides a small headless browser scheduler: it takes a queue of
requests, runs them through a fixed number of concurrent browser contexts,
calls pre-navigation hooks before each page load and hands the loaded page to
a request handler.
"""

import asyncio
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional
from playwright.async_api import async_playwright, Browser, Page

# Optional stealth mode - gracefully degrade if not available
try:
    from playwright_stealth import stealth_async
    STEALTH_AVAILABLE = True
except ImportError:
    STEALTH_AVAILABLE = False
    stealth_async = None


# User agents simulating different browsers
USER_AGENTS = [
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.0 Safari/605.1.15',
    'Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/118.0.0.0 Safari/537.36',
]


@dataclass
class CrawlRequest:
    """A single page load queued to the crawler."""
    url: str
    user_data: Dict[str, Any] = field(default_factory=dict)
    retry_count: int = 0


Hook = Callable[[Page, CrawlRequest], Awaitable[None]]
Handler = Callable[[Page, CrawlRequest], Awaitable[None]]
FailureCallback = Callable[[CrawlRequest, Exception], Awaitable[None]]


class PlaywrightCrawler:
    """Headless browser crawler with bounded concurrency and retries."""

    def __init__(self, logger, max_concurrency: int = 2, max_retries: int = 2,
                 max_requests: Optional[int] = None,
                 pre_navigation_hooks: Optional[List[Hook]] = None,
                 on_failure: Optional[FailureCallback] = None,
                 headless: bool = True,
                 navigation_timeout: int = 30000,
                 user_agent: Optional[str] = None):
        """Initialize Playwright crawler.

        Args:
            logger: Logger instance for error reporting
            max_concurrency: Number of browser contexts running at the same time
            max_retries: Extra attempts per request after the first failure
            max_requests: Stop dispatching after this many requests (None = all)
            pre_navigation_hooks: Coroutines called with (page, request) before goto
            on_failure: Coroutine called with (request, error) once retries are exhausted
            headless: Run Chromium without a window
            navigation_timeout: page.goto timeout in milliseconds
            user_agent: Fixed user agent (default: random pick from USER_AGENTS)
        """
        self.logger = logger
        self.max_concurrency = max_concurrency
        self.max_retries = max_retries
        self.max_requests = max_requests
        self.pre_navigation_hooks = list(pre_navigation_hooks or [])
        self.on_failure = on_failure
        self.headless = headless
        self.navigation_timeout = navigation_timeout
        self.user_agent = user_agent or random.choice(USER_AGENTS)
        self.browser: Optional[Browser] = None
        self.playwright = None
        self.failed_requests: List[CrawlRequest] = []
        self.stats = {
            'requests_total': 0,
            'requests_finished': 0,
            'requests_failed': 0,
            'retries': 0
        }

    async def __aenter__(self):
        """Start Playwright and browser."""
        self.playwright = await async_playwright().start()
        self.browser = await self.playwright.chromium.launch(
            headless=self.headless,
            args=[
                f'--user-agent={self.user_agent}',
                '--disable-blink-features=AutomationControlled',
                '--disable-dev-shm-usage',
                '--no-sandbox',
                '--disable-setuid-sandbox'
            ]
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Close browser and Playwright."""
        if self.browser:
            await self.browser.close()
        if self.playwright:
            await self.playwright.stop()

    async def run(self, requests: List[CrawlRequest], handler: Handler) -> Dict[str, int]:
        """Process every request through the handler.

        Args:
            requests: Requests to load, in dispatch order
            handler: Coroutine called with (page, request) after the page loads

        Returns:
            Dictionary with request counters
        """
        if self.max_requests is not None:
            requests = requests[:self.max_requests]

        self.stats['requests_total'] += len(requests)
        stealth_status = "with stealth mode" if STEALTH_AVAILABLE else "without stealth mode"
        self.logger.info(f"Crawling {len(requests)} requests "
                         f"(max {self.max_concurrency} concurrent, {stealth_status})")

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def process_with_semaphore(request: CrawlRequest):
            async with semaphore:
                await self._process_request(request, handler)

        tasks = [process_with_semaphore(request) for request in requests]
        await asyncio.gather(*tasks)

        self.logger.info(f"Crawl finished: {self.stats['requests_finished']} succeeded, "
                         f"{self.stats['requests_failed']} failed, "
                         f"{self.stats['retries']} retries")
        return dict(self.stats)

    async def _process_request(self, request: CrawlRequest, handler: Handler):
        """Run one request, retrying on any error until max_retries is reached."""
        while True:
            try:
                await self._load_and_handle(request, handler)
                self.stats['requests_finished'] += 1
                return
            except Exception as e:
                if request.retry_count < self.max_retries:
                    request.retry_count += 1
                    self.stats['retries'] += 1
                    self.logger.info(f"  ✗ Error on {request.url[:100]} "
                                     f"(retry {request.retry_count}/{self.max_retries}): {e}")
                    continue

                self.stats['requests_failed'] += 1
                self.failed_requests.append(request)
                self.logger.info(f"  ✗ Giving up on {request.url[:100]} "
                                 f"after {request.retry_count + 1} attempts: {e}")
                if self.on_failure:
                    await self.on_failure(request, e)
                return

    async def _load_and_handle(self, request: CrawlRequest, handler: Handler):
        """Open a fresh context, navigate and hand the page to the handler."""
        context = await self.browser.new_context(
            viewport={'width': 1920, 'height': 1080},
            user_agent=self.user_agent
        )
        try:
            page = await context.new_page()

            if STEALTH_AVAILABLE:
                await stealth_async(page)

            for hook in self.pre_navigation_hooks:
                await hook(page, request)

            self.logger.debug(f"Navigating to {request.url}")
            await page.goto(request.url, wait_until='domcontentloaded',
                            timeout=self.navigation_timeout)

            await handler(page, request)
        finally:
            await context.close()
