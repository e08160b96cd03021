"""
ブラウザ機能 — Playwright Page の薄いアダプタ

待機・リトライのコアはブラウザを直接操作せず、BrowserCapability Protocol を
通じてのみ利用する。PlaywrightBrowser はその Playwright 実装で、
Playwright の例外を shopcheck の例外階層に変換する。

例外の変換:
  - クリック時のタイムアウトで "intercepts pointer events" を含む → ClickInterceptedError
  - その他の Playwright TimeoutError → BrowserTimeoutError
  - page.goto の失敗 → NavigationError
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable, Literal, Optional, Protocol, Union

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from .core.errors import (
    BrowserError,
    BrowserTimeoutError,
    ClickInterceptedError,
    NavigationError,
)

if TYPE_CHECKING:
    from playwright.async_api import ElementHandle, Page, Response

logger = logging.getLogger(__name__)

SelectorState = Literal["attached", "detached", "visible", "hidden"]
LoadState = Literal["load", "domcontentloaded", "networkidle"]

# クリックが他要素に遮られたときに Playwright のログに現れる文言
_INTERCEPTED_MARKERS = ("intercepts pointer events", "is not receiving pointer events")

_SCROLL_INTO_VIEW_SCRIPT = (
    "selector => { const el = document.querySelector(selector);"
    " if (el) el.scrollIntoView({ block: 'center' }); return !!el; }"
)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

class BrowserCapability(Protocol):
    """待機・リトライのコアが必要とするブラウザ操作の最小集合。

    全ての操作は非同期で、タイムアウト時は BrowserTimeoutError を送出する。
    """

    @property
    def url(self) -> str: ...

    async def title(self) -> str: ...

    async def navigate(self, url: str, *, timeout_ms: Optional[int] = None) -> None: ...

    async def query_selector(self, selector: str) -> Optional[ElementHandle]: ...

    async def query_selector_all(self, selector: str) -> list[ElementHandle]: ...

    async def click(
        self,
        target: Union[str, ElementHandle],
        *,
        force: bool = False,
        timeout_ms: Optional[int] = None,
    ) -> None: ...

    async def fill(
        self, selector: str, value: str, *, timeout_ms: Optional[int] = None
    ) -> None: ...

    async def evaluate(self, expression: str, arg: Any = None) -> Any: ...

    async def wait_for_selector(
        self, selector: str, *, state: SelectorState = "visible", timeout_ms: int
    ) -> Optional[ElementHandle]: ...

    async def wait_for_function(
        self, expression: str, *, arg: Any = None, timeout_ms: int
    ) -> Any: ...

    async def wait_for_response(
        self, predicate: Callable[[Response], bool], *, timeout_ms: int
    ) -> Response: ...

    async def wait_for_load_state(self, state: LoadState, *, timeout_ms: int) -> None: ...

    async def wait_for_url(self, pattern: Any, *, timeout_ms: int) -> None: ...

    async def scroll_into_view(self, selector: str) -> bool: ...


# ---------------------------------------------------------------------------
# Playwright 実装
# ---------------------------------------------------------------------------

class PlaywrightBrowser:
    """BrowserCapability の Playwright 実装。

    使用例::

        async with async_playwright() as pw:
            browser = await pw.chromium.launch()
            page = await browser.new_page()
            capability = PlaywrightBrowser(page)
            await capability.navigate("https://automationexercise.com")
    """

    def __init__(self, page: Page) -> None:
        self._page = page

    @property
    def page(self) -> Page:
        return self._page

    @property
    def url(self) -> str:
        return self._page.url

    async def title(self) -> str:
        return await self._page.title()

    # ----- ナビゲーション -----

    async def navigate(self, url: str, *, timeout_ms: Optional[int] = None) -> None:
        logger.info("navigate: %s", url)
        kwargs: dict = {"wait_until": "load"}
        if timeout_ms is not None:
            kwargs["timeout"] = timeout_ms
        try:
            await self._page.goto(url, **kwargs)
        except PlaywrightError as exc:
            raise NavigationError(f"'{url}' への遷移に失敗しました: {exc}") from exc

    # ----- DOM 参照 -----

    async def query_selector(self, selector: str) -> Optional[ElementHandle]:
        return await self._page.query_selector(selector)

    async def query_selector_all(self, selector: str) -> list[ElementHandle]:
        return await self._page.query_selector_all(selector)

    # ----- 操作 -----

    async def click(
        self,
        target: Union[str, ElementHandle],
        *,
        force: bool = False,
        timeout_ms: Optional[int] = None,
    ) -> None:
        kwargs: dict = {"force": force}
        if timeout_ms is not None:
            kwargs["timeout"] = timeout_ms
        desc = target if isinstance(target, str) else "<element>"
        logger.debug("click: %s (force=%s)", desc, force)
        try:
            if isinstance(target, str):
                await self._page.click(target, **kwargs)
            else:
                await target.click(**kwargs)
        except PlaywrightTimeoutError as exc:
            raise _translate_click_timeout(desc, exc) from exc
        except PlaywrightError as exc:
            raise BrowserError(f"'{desc}' のクリックに失敗しました: {exc}") from exc

    async def fill(
        self, selector: str, value: str, *, timeout_ms: Optional[int] = None
    ) -> None:
        kwargs: dict = {}
        if timeout_ms is not None:
            kwargs["timeout"] = timeout_ms
        try:
            await self._page.fill(selector, value, **kwargs)
        except PlaywrightTimeoutError as exc:
            raise BrowserTimeoutError(f"'{selector}' への入力がタイムアウトしました: {exc}") from exc
        except PlaywrightError as exc:
            raise BrowserError(f"'{selector}' への入力に失敗しました: {exc}") from exc

    async def evaluate(self, expression: str, arg: Any = None) -> Any:
        if arg is None:
            return await self._page.evaluate(expression)
        return await self._page.evaluate(expression, arg)

    async def scroll_into_view(self, selector: str) -> bool:
        return bool(await self._page.evaluate(_SCROLL_INTO_VIEW_SCRIPT, selector))

    # ----- 待機 -----

    async def wait_for_selector(
        self, selector: str, *, state: SelectorState = "visible", timeout_ms: int
    ) -> Optional[ElementHandle]:
        try:
            return await self._page.wait_for_selector(
                selector, state=state, timeout=timeout_ms
            )
        except PlaywrightTimeoutError as exc:
            raise BrowserTimeoutError(
                f"'{selector}' が {timeout_ms}ms 以内に {state} になりませんでした"
            ) from exc

    async def wait_for_function(
        self, expression: str, *, arg: Any = None, timeout_ms: int
    ) -> Any:
        try:
            return await self._page.wait_for_function(
                expression, arg=arg, timeout=timeout_ms
            )
        except PlaywrightTimeoutError as exc:
            raise BrowserTimeoutError(
                f"スクリプト条件が {timeout_ms}ms 以内に満たされませんでした"
            ) from exc

    async def wait_for_response(
        self, predicate: Callable[[Response], bool], *, timeout_ms: int
    ) -> Response:
        try:
            return await self._page.wait_for_event(
                "response", predicate=predicate, timeout=timeout_ms
            )
        except PlaywrightTimeoutError as exc:
            raise BrowserTimeoutError(
                f"条件に一致するレスポンスが {timeout_ms}ms 以内に届きませんでした"
            ) from exc

    async def wait_for_load_state(self, state: LoadState, *, timeout_ms: int) -> None:
        try:
            await self._page.wait_for_load_state(state, timeout=timeout_ms)
        except PlaywrightTimeoutError as exc:
            raise BrowserTimeoutError(
                f"ロード状態 '{state}' に {timeout_ms}ms 以内に到達しませんでした"
            ) from exc

    async def wait_for_url(self, pattern: Any, *, timeout_ms: int) -> None:
        try:
            await self._page.wait_for_url(pattern, timeout=timeout_ms)
        except PlaywrightTimeoutError as exc:
            raise BrowserTimeoutError(
                f"URL が {timeout_ms}ms 以内に '{pattern}' になりませんでした"
            ) from exc


# ---------------------------------------------------------------------------
# ヘルパー関数
# ---------------------------------------------------------------------------

def _translate_click_timeout(desc: str, exc: PlaywrightTimeoutError) -> BrowserTimeoutError:
    """クリックのタイムアウトを遮られたクリックとそれ以外に振り分ける。"""
    text = str(exc)
    if any(marker in text for marker in _INTERCEPTED_MARKERS):
        return ClickInterceptedError(f"'{desc}' へのクリックが他の要素に遮られました: {text}")
    return BrowserTimeoutError(f"'{desc}' のクリックがタイムアウトしました: {text}")
