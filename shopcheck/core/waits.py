"""
待機戦略 — 条件待機と要素・ページ状態の待機ヘルパー

Playwright の auto-wait だけでは不十分なケースの待機を提供する。

主な機能:
  - ConditionWaiter: 非同期述語をポーリングし、真になるまで待機する基本部品
  - wait_for_element_visible / wait_for_elements / wait_for_element_to_disappear:
    要素状態の待機（タイムアウト時は False を返す）
  - wait_for_url_change / wait_for_text_content: URL・テキストの待機
  - wait_for_network_settle: ネットワーク安定待機

ConditionWaiter の述語で発生した例外は「まだ満たされていない」として扱い、
ポーリングを継続する。タイムアウト時の例外には最後の評価エラーを含める。
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from .deadline import Clock, Deadline, effective_timeout
from .errors import ConditionTimeoutError, ReadinessProbe, ReadinessStatus, is_timeout_error

if TYPE_CHECKING:
    from ..browser import BrowserCapability

logger = logging.getLogger(__name__)

Predicate = Callable[[], Awaitable[Any]]
"""引数なしで真偽値（truthy/falsy）を返す非同期関数の型。"""

DEFAULT_POLL_INTERVAL_MS = 500


# ---------------------------------------------------------------------------
# 条件待機
# ---------------------------------------------------------------------------

class ConditionWaiter:
    """非同期述語が真になるまでポーリングで待機する。

    使用例::

        waiter = ConditionWaiter()
        await waiter.wait_until(
            lambda: browser.evaluate("() => document.readyState === 'complete'"),
            timeout_ms=5_000,
            description="document ready",
        )
    """

    def __init__(
        self,
        poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
        clock: Clock = time.monotonic,
    ) -> None:
        """ConditionWaiter を初期化する。

        Args:
            poll_interval_ms: 既定のポーリング間隔（ミリ秒）
            clock: 単調増加する秒数を返す時計関数
        """
        if poll_interval_ms <= 0:
            raise ValueError(f"poll_interval_ms は正の値を指定してください: {poll_interval_ms}")
        self._poll_interval_ms = poll_interval_ms
        self._clock = clock

    async def wait_until(
        self,
        predicate: Predicate,
        timeout_ms: float,
        poll_interval_ms: Optional[int] = None,
        *,
        description: str = "condition",
        deadline: Optional[Deadline] = None,
    ) -> None:
        """predicate が真を返すまで待機する。

        最初の評価は即座に行い、以降 poll_interval_ms 間隔で再評価する。
        predicate の呼び出し自体も残り時間で打ち切るため、応答しない
        predicate があっても制限時間を超えて待機しない。

        Args:
            predicate: 評価する非同期述語
            timeout_ms: 制限時間（ミリ秒）
            poll_interval_ms: ポーリング間隔（省略時はコンストラクタの値）
            description: エラーメッセージ・ログ用の条件の説明
            deadline: 全体の期限（指定時は残り時間で制限時間を切り詰める）

        Raises:
            ConditionTimeoutError: 制限時間内に predicate が真にならなかった場合
            ValueError: poll_interval_ms が正の値でない場合
        """
        interval_ms = self._poll_interval_ms if poll_interval_ms is None else poll_interval_ms
        if interval_ms <= 0:
            raise ValueError(f"poll_interval_ms は正の値を指定してください: {interval_ms}")
        interval_sec = interval_ms / 1000.0
        budget_ms = effective_timeout(timeout_ms, deadline)
        budget_sec = budget_ms / 1000.0
        start = self._clock()
        last_error: Optional[BaseException] = None
        evaluations = 0

        while True:
            remaining = budget_sec - (self._clock() - start)
            if remaining <= 0:
                logger.debug(
                    "条件 '%s' がタイムアウトしました（%d 回評価, %.0fms）",
                    description, evaluations, budget_ms,
                )
                raise ConditionTimeoutError(description, budget_ms, last_error=last_error)

            evaluations += 1
            try:
                if await asyncio.wait_for(predicate(), timeout=remaining):
                    logger.debug(
                        "条件 '%s' が満たされました（%d 回目, %.0fms 経過）",
                        description, evaluations, (self._clock() - start) * 1000,
                    )
                    return
            except Exception as exc:
                last_error = exc
                logger.debug("条件 '%s' の評価中にエラー: %s", description, exc)

            remaining = budget_sec - (self._clock() - start)
            if remaining > 0:
                await asyncio.sleep(min(interval_sec, remaining))

    async def probe(self, predicate: Predicate) -> ReadinessProbe:
        """predicate を1回だけ評価し、3値の結果を返す。

        Args:
            predicate: 評価する非同期述語

        Returns:
            READY / NOT_READY / ERROR のいずれかを持つ ReadinessProbe
        """
        try:
            result = await predicate()
        except Exception as exc:
            return ReadinessProbe(ReadinessStatus.ERROR, detail=str(exc), error=exc)
        if result:
            return ReadinessProbe(ReadinessStatus.READY)
        return ReadinessProbe(ReadinessStatus.NOT_READY)


# ---------------------------------------------------------------------------
# 要素状態の待機
# ---------------------------------------------------------------------------

async def wait_for_element_visible(
    browser: BrowserCapability,
    selector: str,
    timeout_ms: int = 30_000,
    *,
    deadline: Optional[Deadline] = None,
) -> bool:
    """要素が可視になるまで待機する。

    deadline を指定した場合は残り時間で timeout_ms を切り詰める。以下の
    ヘルパーも同様で、期限が尽きていればブラウザを呼ばずに失敗扱いとする。

    Returns:
        可視になれば True、タイムアウトした場合は False
    """
    timeout_ms = effective_timeout(timeout_ms, deadline)
    if timeout_ms <= 0:
        return False
    try:
        await browser.wait_for_selector(selector, state="visible", timeout_ms=timeout_ms)
        return True
    except Exception as exc:
        if not is_timeout_error(exc):
            raise
        logger.debug("'%s' が %dms 以内に可視になりませんでした", selector, timeout_ms)
        return False


async def wait_for_elements(
    browser: BrowserCapability,
    selector: str,
    minimum_count: int = 1,
    timeout_ms: int = 30_000,
    *,
    deadline: Optional[Deadline] = None,
) -> bool:
    """selector に一致する要素が minimum_count 件以上になるまで待機する。

    Returns:
        条件を満たせば True、タイムアウトした場合は False
    """
    timeout_ms = effective_timeout(timeout_ms, deadline)
    if timeout_ms <= 0:
        return False
    try:
        await browser.wait_for_function(
            "([selector, minimum]) => document.querySelectorAll(selector).length >= minimum",
            arg=[selector, minimum_count],
            timeout_ms=timeout_ms,
        )
        return True
    except Exception as exc:
        if not is_timeout_error(exc):
            raise
        logger.debug(
            "'%s' が %dms 以内に %d 件以上になりませんでした",
            selector, timeout_ms, minimum_count,
        )
        return False


async def wait_for_element_to_disappear(
    browser: BrowserCapability,
    selector: str,
    timeout_ms: int = 30_000,
    *,
    deadline: Optional[Deadline] = None,
) -> bool:
    """要素が非表示（またはDOMから削除）になるまで待機する。

    ローディングスピナー等の消失待ちに使用する。

    Returns:
        非表示になれば True、タイムアウトした場合は False
    """
    timeout_ms = effective_timeout(timeout_ms, deadline)
    if timeout_ms <= 0:
        return False
    try:
        await browser.wait_for_selector(selector, state="hidden", timeout_ms=timeout_ms)
        return True
    except Exception as exc:
        if not is_timeout_error(exc):
            raise
        logger.debug("'%s' が %dms 以内に非表示になりませんでした", selector, timeout_ms)
        return False


# ---------------------------------------------------------------------------
# URL・テキストの待機
# ---------------------------------------------------------------------------

async def wait_for_url_change(
    browser: BrowserCapability,
    expected_url_pattern: Any,
    timeout_ms: int = 30_000,
    *,
    deadline: Optional[Deadline] = None,
) -> bool:
    """URL が expected_url_pattern（文字列・glob・正規表現）に一致するまで待機する。

    Returns:
        一致すれば True、タイムアウトした場合は False
    """
    timeout_ms = effective_timeout(timeout_ms, deadline)
    if timeout_ms <= 0:
        return False
    try:
        await browser.wait_for_url(expected_url_pattern, timeout_ms=timeout_ms)
        return True
    except Exception as exc:
        if not is_timeout_error(exc):
            raise
        logger.debug("URL が %dms 以内に '%s' になりませんでした", timeout_ms, expected_url_pattern)
        return False


_TEXT_CONTENT_SCRIPT = """
([selector, expected, exact]) => {
    const element = document.querySelector(selector);
    if (!element) return false;
    const text = (element.textContent || '').trim();
    return exact ? text === expected : text.toLowerCase().includes(expected.toLowerCase());
}
"""


async def wait_for_text_content(
    browser: BrowserCapability,
    selector: str,
    expected_text: str,
    exact_match: bool = False,
    timeout_ms: int = 30_000,
    *,
    deadline: Optional[Deadline] = None,
) -> bool:
    """要素のテキストが期待値に一致するまで待機する。

    exact_match が False の場合は大文字小文字を無視した部分一致で判定する。

    Returns:
        一致すれば True、タイムアウトした場合は False
    """
    timeout_ms = effective_timeout(timeout_ms, deadline)
    if timeout_ms <= 0:
        return False
    try:
        await browser.wait_for_function(
            _TEXT_CONTENT_SCRIPT,
            arg=[selector, expected_text, exact_match],
            timeout_ms=timeout_ms,
        )
        return True
    except Exception as exc:
        if not is_timeout_error(exc):
            raise
        logger.debug(
            "'%s' のテキストが %dms 以内に '%s' になりませんでした",
            selector, timeout_ms, expected_text,
        )
        return False


# ---------------------------------------------------------------------------
# ネットワーク安定待機
# ---------------------------------------------------------------------------

async def wait_for_network_settle(
    browser: BrowserCapability,
    timeout_ms: int = 5_000,
    *,
    deadline: Optional[Deadline] = None,
) -> None:
    """ネットワークが安定するまで待機する。

    waitForLoadState("networkidle") を使用して、進行中のネットワーク
    リクエストが全て完了するまで待機する。

    Raises:
        ConditionTimeoutError: タイムアウト時間内にネットワークが安定しなかった場合
    """
    timeout_ms = effective_timeout(timeout_ms, deadline)
    if timeout_ms <= 0:
        raise ConditionTimeoutError("network idle", timeout_ms)
    try:
        await browser.wait_for_load_state("networkidle", timeout_ms=timeout_ms)
        logger.debug("ネットワークが安定しました")
    except Exception as exc:
        if not is_timeout_error(exc):
            raise
        raise ConditionTimeoutError("network idle", timeout_ms, last_error=exc) from exc
