"""
FormPilot - Browser Agent (The Executor)
Playwright implementation of the ExecutionBackend protocol.

The Executor is the only component that touches the live page. It launches
a stealth-configured Chromium, captures ARIA snapshots, and performs the
primitive operations tool handlers ask for.

Features:
- Headless & headed modes
- Stealth browsing (fingerprint spoofing, randomized user agent/viewport)
- Snapshot-key targeting: refs from the last snapshot resolve through
  get_by_role(role, name=..., exact=True).nth(n)
- Playwright errors mapped onto ElementNotFoundError / ActionTimeoutError
"""

import asyncio
import logging
import random
import re
from contextlib import contextmanager
from typing import Iterator, Optional, Type, Union

from playwright.async_api import (
    async_playwright,
    Browser,
    BrowserContext,
    Locator,
    Page,
    Playwright,
    TimeoutError as PlaywrightTimeout,
    Error as PlaywrightError,
)

from formpilot.browser.backend import Target
from formpilot.browser.snapshot import TEXT_ROLES, PageSnapshot, parse_key
from formpilot.core.config import get_settings
from formpilot.core.errors import (
    ActionTimeoutError,
    ElementNotFoundError,
    FormPilotError,
    NavigationError,
    SnapshotError,
)

settings = get_settings()
logger = logging.getLogger(__name__)

ARIA_REF_RE = re.compile(r'^e\d+$')


class BrowserAgent:
    """
    The Executor Agent - Browser automation with stealth capabilities.

    Usage:
        async with BrowserAgent(headless=True) as agent:
            await agent.navigate("https://jobs.example.com/apply/123")
            snapshot = await agent.capture_snapshot()
    """

    # Stealth user agents (rotated randomly)
    USER_AGENTS = [
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
        "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    ]

    # Viewport sizes that look human
    VIEWPORTS = [
        {"width": 1920, "height": 1080},
        {"width": 1536, "height": 864},
        {"width": 1440, "height": 900},
        {"width": 1366, "height": 768},
    ]

    STEALTH_SCRIPT = """
        Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
        window.chrome = { runtime: {}, loadTimes: function() {}, csi: function() {}, app: {} };
        Object.defineProperty(navigator, 'languages', { get: () => ['en-US', 'en'] });
        Object.defineProperty(navigator, 'plugins', {
            get: () => [
                { name: 'Chrome PDF Plugin', filename: 'internal-pdf-viewer' },
                { name: 'Chrome PDF Viewer', filename: 'mhjfbmdgcfjbbpaeojofohoefgiehjai' },
            ]
        });
    """

    def __init__(
        self,
        headless: bool = True,
        default_timeout_ms: Optional[int] = None,
        human_delay_ms: tuple = (50, 250),
    ):
        """
        Initialize the Browser Agent.

        Args:
            headless: Whether to run without a visible window
            default_timeout_ms: Playwright timeout for element operations
            human_delay_ms: (min, max) pause before each interaction
        """
        self.headless = headless
        self.default_timeout_ms = default_timeout_ms or settings.PLAYWRIGHT_DEFAULT_TIMEOUT_MS
        self.human_delay_ms = human_delay_ms

        # Playwright instances
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None

        self._last_snapshot: Optional[PageSnapshot] = None

    async def launch_browser(self) -> Page:
        """Launch Chromium with stealth configuration and open a page."""
        self._playwright = await async_playwright().start()

        user_agent = random.choice(self.USER_AGENTS)
        viewport = random.choice(self.VIEWPORTS)

        launch_args = [
            "--disable-blink-features=AutomationControlled",
            "--disable-dev-shm-usage",
            "--disable-infobars",
            "--no-first-run",
            "--password-store=basic",
            "--use-mock-keychain",
        ]
        if self.headless:
            launch_args.append("--headless=new")

        self._browser = await self._playwright.chromium.launch(
            headless=self.headless,
            args=launch_args,
            slow_mo=settings.PLAYWRIGHT_SLOW_MO,
        )
        self._context = await self._browser.new_context(
            user_agent=user_agent,
            viewport=viewport,
            locale="en-US",
            timezone_id="America/New_York",
            color_scheme="light",
        )
        await self._context.add_init_script(self.STEALTH_SCRIPT)

        self._page = await self._context.new_page()
        self._page.set_default_timeout(self.default_timeout_ms)

        logger.info(
            f"[BrowserAgent] Launched browser (headless={self.headless}, "
            f"viewport={viewport['width']}x{viewport['height']})"
        )
        return self._page

    @property
    def page(self) -> Page:
        if not self._page:
            raise FormPilotError("Browser not launched. Call launch_browser() first.")
        return self._page

    # =========================================================================
    # Element resolution
    # =========================================================================

    @contextmanager
    def _mapped_errors(self, what: str, error_cls: Type[FormPilotError] = ElementNotFoundError) -> Iterator[None]:
        try:
            yield
        except PlaywrightTimeout as e:
            raise ActionTimeoutError(f"Timed out on {what}: {e}") from e
        except PlaywrightError as e:
            raise error_cls(f"{what}: {e}") from e

    def _locator_for_key(self, key: str) -> Locator:
        parsed = parse_key(key)
        if parsed is None:
            raise ElementNotFoundError(f"Unknown ref: {key}")
        role, name, index = parsed

        if role in TEXT_ROLES:
            return self.page.get_by_text(name, exact=True).nth(index)
        if name:
            return self.page.get_by_role(role, name=name, exact=True).nth(index)

        # Unnamed elements: position among all elements of that role in the snapshot
        position = index
        if self._last_snapshot is not None:
            same_role = [el.key for el in self._last_snapshot.elements.values() if el.role == role]
            if key in same_role:
                position = same_role.index(key)
        return self.page.get_by_role(role).nth(position)

    def _resolve(self, target: Target) -> Locator:
        if target.ref:
            if ARIA_REF_RE.match(target.ref):
                locator = self.page.locator(f"aria-ref={target.ref}")
            else:
                locator = self._locator_for_key(target.ref)
        elif target.selector:
            locator = self.page.locator(target.selector)
        elif target.label:
            locator = self.page.get_by_label(target.label)
        elif target.text and target.role:
            locator = self.page.get_by_role(target.role, name=target.text)
        elif target.text:
            locator = self.page.get_by_text(target.text)
        else:
            raise ElementNotFoundError("No ref, selector, label or text provided")
        return locator

    async def _locate(self, target: Target) -> Locator:
        locator = self._resolve(target)
        with self._mapped_errors(f"locating {target.describe()}"):
            count = await locator.count()
        if count == 0:
            raise ElementNotFoundError(f"Element not found: {target.describe()}")
        return locator.first

    async def _human_delay(self) -> None:
        """Short random pause before an interaction."""
        low, high = self.human_delay_ms
        if high > 0:
            await asyncio.sleep(random.randint(low, high) / 1000)

    # =========================================================================
    # ExecutionBackend primitives
    # =========================================================================

    async def capture_snapshot(self) -> PageSnapshot:
        with self._mapped_errors("capturing snapshot", SnapshotError):
            aria = await self.page.locator("body").aria_snapshot()
            title = await self.page.title()
        snapshot = PageSnapshot.from_aria(self.page.url, title, aria)
        self._last_snapshot = snapshot
        logger.debug(f"[BrowserAgent] Snapshot of {snapshot.url}: {len(snapshot.elements)} elements")
        return snapshot

    async def fill(self, target: Target, value: str) -> None:
        locator = await self._locate(target)
        await self._human_delay()
        with self._mapped_errors(f"filling {target.describe()}"):
            await locator.fill(value)

    async def click(self, target: Target) -> None:
        locator = await self._locate(target)
        await self._human_delay()
        with self._mapped_errors(f"clicking {target.describe()}"):
            await locator.click(delay=random.randint(50, 150))

    async def select_option(
        self,
        target: Target,
        value: Optional[str] = None,
        label: Optional[str] = None,
        index: Optional[int] = None,
    ) -> str:
        locator = await self._locate(target)
        await self._human_delay()
        with self._mapped_errors(f"selecting in {target.describe()}"):
            if value is not None:
                selected = await locator.select_option(value=value)
            elif label is not None:
                selected = await locator.select_option(label=label)
            else:
                selected = await locator.select_option(index=index)
        return selected[0] if selected else ""

    async def set_checked(self, target: Target, checked: bool) -> None:
        locator = await self._locate(target)
        await self._human_delay()
        with self._mapped_errors(f"setting {target.describe()}"):
            await locator.set_checked(checked)

    async def upload(self, target: Target, file_path: str) -> None:
        locator = await self._locate(target)
        with self._mapped_errors(f"uploading to {target.describe()}"):
            await locator.set_input_files(file_path)

    async def navigate(self, url: str) -> str:
        with self._mapped_errors(f"loading {url}", NavigationError):
            response = await self.page.goto(url, wait_until="domcontentloaded")
        if response is not None and response.status >= 400:
            raise NavigationError(f"{url} returned HTTP {response.status}")
        logger.info(f"[BrowserAgent] Navigated to {self.page.url}")
        return self.page.url

    async def scroll(self, direction: str = "down", amount: int = 500,
                     target: Optional[Target] = None) -> None:
        if target is not None:
            locator = await self._locate(target)
            with self._mapped_errors(f"scrolling to {target.describe()}"):
                await locator.scroll_into_view_if_needed()
            return

        scripts = {
            "down": f"window.scrollBy(0, {int(amount)})",
            "up": f"window.scrollBy(0, -{int(amount)})",
            "bottom": "window.scrollTo(0, document.body.scrollHeight)",
            "top": "window.scrollTo(0, 0)",
        }
        with self._mapped_errors("scrolling"):
            await self.page.evaluate(scripts.get(direction, scripts["down"]))

    async def wait(self, timeout_ms: Union[int, float] = 1000,
                   target: Optional[Target] = None) -> None:
        if target is None:
            await asyncio.sleep(timeout_ms / 1000)
            return

        locator = self._resolve(target)
        with self._mapped_errors(f"waiting for {target.describe()}"):
            await locator.first.wait_for(state="visible", timeout=timeout_ms)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def close(self) -> None:
        """Close the browser and cleanup resources."""
        if self._page:
            await self._page.close()
        if self._context:
            await self._context.close()
        if self._browser:
            await self._browser.close()
        if self._playwright:
            await self._playwright.stop()

        self._page = None
        self._context = None
        self._browser = None
        self._playwright = None

        logger.info("[BrowserAgent] Browser closed")

    async def __aenter__(self):
        """Async context manager entry."""
        await self.launch_browser()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()
