"""Browser sessions and the bounded pool that leases them.

Each session wraps one WebDriver. The pool caps concurrent leases, rotates
the presented user agent per driver, and quits a driver after a number of
lease cycles so long-running crawls do not accumulate browser memory.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, List, Optional

from selenium.common.exceptions import TimeoutException, WebDriverException
from selenium.webdriver.support.ui import WebDriverWait

from .errors import NavigationError, PoolExhausted
from .extract import Document, looks_like_browser_challenge

logger = logging.getLogger(__name__)

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36 Edg/122.0.0.0",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36",
]

BROWSER_ARGS = [
    "--disable-gpu",
    "--no-sandbox",
    "--disable-dev-shm-usage",
    "--no-first-run",
    "--window-size=1280,720",
    "--ignore-certificate-errors",
    "--disable-blink-features=AutomationControlled",
]


@dataclass(frozen=True)
class WaitPolicy:
    timeout: float = 30.0
    settle: float = 0.0
    challenge_rounds: int = 8
    challenge_wait: float = 1.2


def _apply_common_options(options: Any, headless: bool, block_images: bool, user_agent: str) -> None:
    for arg in BROWSER_ARGS:
        options.add_argument(arg)
    if headless:
        options.add_argument("--headless=new")
    options.add_argument(f"--user-agent={user_agent}")
    if block_images:
        options.add_argument("--blink-settings=imagesEnabled=false")
        options.add_experimental_option("prefs", {"profile.managed_default_content_settings.images": 2})


def create_chrome_driver(
    headless: bool = True,
    block_images: bool = False,
    user_agent: Optional[str] = None,
    timeout: float = 30.0,
    engine: str = "auto",
) -> Any:
    """Start Chrome, preferring undetected-chromedriver and falling back to plain selenium."""
    user_agent = user_agent or random.choice(USER_AGENTS)
    if engine in ("auto", "undetected"):
        try:
            import undetected_chromedriver as uc

            options = uc.ChromeOptions()
            for arg in BROWSER_ARGS:
                options.add_argument(arg)
            options.add_argument(f"--user-agent={user_agent}")
            if block_images:
                options.add_argument("--blink-settings=imagesEnabled=false")
            driver = uc.Chrome(options=options, headless=headless, use_subprocess=True)
            driver.set_page_load_timeout(timeout)
            return driver
        except Exception as exc:
            if engine == "undetected":
                raise
            logger.warning("undetected-chromedriver unavailable, falling back to selenium: %s", exc)

    from selenium import webdriver
    from selenium.webdriver.chrome.options import Options
    from selenium.webdriver.chrome.service import Service
    from webdriver_manager.chrome import ChromeDriverManager

    options = Options()
    _apply_common_options(options, headless, block_images, user_agent)
    options.add_experimental_option("excludeSwitches", ["enable-automation", "enable-logging"])
    options.add_experimental_option("useAutomationExtension", False)
    service = Service(ChromeDriverManager().install())
    driver = webdriver.Chrome(service=service, options=options)
    driver.set_page_load_timeout(timeout)
    driver.execute_cdp_cmd(
        "Page.addScriptToEvaluateOnNewDocument",
        {"source": "Object.defineProperty(navigator, 'webdriver', {get: () => undefined})"},
    )
    return driver


class WebDriverSession:
    """One leased browser: navigate, wait, extract. Extraction never touches site state."""

    def __init__(self, driver: Any, sleep: Callable[[float], None] = time.sleep) -> None:
        self.driver = driver
        self.leases = 0
        self._sleep = sleep
        self.current_url = ""

    def navigate(self, url: str, wait_policy: WaitPolicy) -> None:
        self.current_url = url
        try:
            self.driver.set_page_load_timeout(max(5, int(wait_policy.timeout)))
            self.driver.get(url)
        except TimeoutException as exc:
            raise NavigationError(url, f"timeout after {wait_policy.timeout:.0f}s") from exc
        except WebDriverException as exc:
            raise NavigationError(url, str(getattr(exc, "msg", "") or exc)) from exc
        if wait_policy.settle > 0:
            self._sleep(wait_policy.settle)
        rounds = 0
        html_payload = self._page_source()
        while looks_like_browser_challenge(html_payload) and rounds < max(1, wait_policy.challenge_rounds):
            self._sleep(max(0.2, wait_policy.challenge_wait))
            html_payload = self._page_source()
            rounds += 1
        if looks_like_browser_challenge(html_payload):
            raise NavigationError(url, "browser_challenge_not_cleared")

    def wait_for(self, condition: Callable[[Document], bool], timeout: float) -> bool:
        """Poll the rendered document until ``condition`` holds; False on timeout."""
        try:
            WebDriverWait(self.driver, timeout, poll_frequency=0.5).until(
                lambda driver: condition(self._document())
            )
            return True
        except TimeoutException:
            return False
        except WebDriverException as exc:
            raise NavigationError(self.current_url, str(getattr(exc, "msg", "") or exc)) from exc

    def extract(self, logic: Callable[[Document], Any]) -> Any:
        return logic(self._document())

    def save_diagnostic(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.with_suffix(".html").write_text(self._page_source(), encoding="utf-8", errors="ignore")
        try:
            self.driver.save_screenshot(str(path.with_suffix(".png")))
        except WebDriverException as exc:
            logger.debug("screenshot failed for %s: %s", path, exc)

    def close(self) -> None:
        try:
            self.driver.quit()
        except WebDriverException as exc:
            logger.debug("driver quit failed: %s", exc)

    def _page_source(self) -> str:
        try:
            return str(self.driver.page_source or "")
        except WebDriverException as exc:
            raise NavigationError(self.current_url, str(getattr(exc, "msg", "") or exc)) from exc

    def _document(self) -> Document:
        url = self.current_url
        try:
            url = str(self.driver.current_url or url)
        except WebDriverException:
            pass
        return Document.from_html(self._page_source(), url)


class RendererPool:
    """Bounded set of sessions. Sessions are leased, never owned long term."""

    def __init__(
        self,
        size: int,
        session_factory: Optional[Callable[[], Any]] = None,
        block_images: bool = False,
        headless: bool = True,
        timeout: float = 30.0,
        engine: str = "auto",
        recycle_after: int = 20,
        acquire_timeout: Optional[float] = 120.0,
        name: str = "renderer",
    ) -> None:
        self.size = max(1, int(size))
        self.name = name
        self.recycle_after = max(1, int(recycle_after))
        self.acquire_timeout = acquire_timeout
        self._factory = session_factory or (
            lambda: WebDriverSession(
                create_chrome_driver(
                    headless=headless,
                    block_images=block_images,
                    timeout=timeout,
                    engine=engine,
                )
            )
        )
        self._slots = threading.BoundedSemaphore(self.size)
        self._lock = threading.Lock()
        self._idle: List[Any] = []
        self._leased: List[Any] = []
        self._closed = False
        self.created = 0
        self.recycled = 0

    def acquire_session(self, timeout: Optional[float] = None) -> Any:
        wait = self.acquire_timeout if timeout is None else timeout
        if not self._slots.acquire(timeout=wait):
            raise PoolExhausted(f"{self.name}: no session free after {wait}s")
        try:
            with self._lock:
                if self._closed:
                    raise PoolExhausted(f"{self.name}: pool is shut down")
                session = self._idle.pop() if self._idle else None
            if session is None:
                session = self._factory()
                self.created += 1
                logger.debug("%s: started session #%d", self.name, self.created)
            with self._lock:
                self._leased.append(session)
            return session
        except BaseException:
            self._slots.release()
            raise

    def release_session(self, session: Any, discard: bool = False) -> None:
        session.leases = getattr(session, "leases", 0) + 1
        with self._lock:
            if session in self._leased:
                self._leased.remove(session)
            recycle = discard or self._closed or session.leases >= self.recycle_after
            if not recycle:
                self._idle.append(session)
        if recycle:
            if not self._closed:
                self.recycled += 1
                logger.debug("%s: recycling session after %d leases", self.name, session.leases)
            session.close()
        self._slots.release()

    def shutdown(self, grace: float = 5.0) -> None:
        """Close idle sessions; leased ones get ``grace`` seconds, then are abandoned."""
        with self._lock:
            self._closed = True
            idle, self._idle = self._idle, []
            leased = list(self._leased)
        for session in idle:
            session.close()
        if not leased:
            return
        closers = [threading.Thread(target=s.close, daemon=True) for s in leased]
        for closer in closers:
            closer.start()
        deadline = time.monotonic() + max(0.0, grace)
        for closer in closers:
            closer.join(max(0.0, deadline - time.monotonic()))
