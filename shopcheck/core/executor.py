"""
耐障害アクション実行 — リトライとフォールバックによる UI 操作

1つのユーザー操作（クリック・入力）を、プライマリ操作のリトライと
順序付きフォールバックで包む。

実行順序:
  1. プライマリ操作を実行し、成功すれば即座に返す
  2. 失敗した場合、RetryPolicy に従い指数バックオフで再試行する
  3. プライマリが尽きたら、フォールバックを指定順に同じポリシーで試行する
  4. 全て失敗した場合、全エラーを発生順に集約した AllStrategiesExhaustedError を送出する

RetryPolicy.escalate_on に含まれる例外（既定では ClickInterceptedError）は
その戦略の残りの再試行を打ち切り、直ちに次のフォールバックへ進む。
成功した操作の副作用は取り消さない。
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Generic,
    Optional,
    Sequence,
    TypeVar,
    Union,
)

from .deadline import Clock, Deadline
from .errors import (
    AllStrategiesExhaustedError,
    ClickInterceptedError,
    ErrorInfo,
    FailureContext,
)

if TYPE_CHECKING:
    from ..browser import BrowserCapability
    from ..config import RetrySettings, TimeoutSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")

Action = Callable[[], Awaitable[T]]
"""引数なしの非同期アクションの型。"""

PRIMARY = "primary"
FALLBACK_PREFIX = "fallback:"

_SCRIPT_CLICK = """
selector => {
    const element = document.querySelector(selector);
    if (!element) throw new Error(`element not found: ${selector}`);
    element.click();
}
"""

_SCRIPT_FILL = """
([selector, value]) => {
    const element = document.querySelector(selector);
    if (!element) throw new Error(`element not found: ${selector}`);
    element.focus();
    element.value = value;
    element.dispatchEvent(new Event('input', { bubbles: true }));
    element.dispatchEvent(new Event('change', { bubbles: true }));
}
"""


# ---------------------------------------------------------------------------
# データクラス
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RetryPolicy:
    """1回の perform 呼び出しに適用するリトライ方針。

    試行 i（0始まり）の失敗後の待機時間は base_delay_ms * backoff_multiplier ** i。

    Attributes:
        max_attempts: 各戦略の最大試行回数（1以上）
        base_delay_ms: 初回の待機時間（ミリ秒, 0以上）
        backoff_multiplier: 待機時間の倍率（1以上）
        escalate_on: 発生時にその戦略の再試行を打ち切る例外型
    """

    max_attempts: int = 3
    base_delay_ms: int = 1_000
    backoff_multiplier: float = 2.0
    escalate_on: tuple[type[BaseException], ...] = (ClickInterceptedError,)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts は 1 以上を指定してください: {self.max_attempts}")
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms は 0 以上を指定してください: {self.base_delay_ms}")
        if self.backoff_multiplier < 1:
            raise ValueError(
                f"backoff_multiplier は 1 以上を指定してください: {self.backoff_multiplier}"
            )

    def delay_ms(self, attempt: int) -> float:
        """試行 attempt（0始まり）の失敗後に待機する時間を返す。"""
        return self.base_delay_ms * self.backoff_multiplier ** attempt

    @classmethod
    def from_settings(cls, retry: RetrySettings) -> RetryPolicy:
        return cls(
            max_attempts=retry.max_attempts,
            base_delay_ms=retry.delay_ms,
            backoff_multiplier=retry.backoff_multiplier,
        )


@dataclass(frozen=True)
class ActionStrategy(Generic[T]):
    """名前付きのフォールバック操作。

    Attributes:
        name: 戦略名（結果には "fallback:<name>" として記録される）
        action: 実行する非同期アクション
    """

    name: str
    action: Action[T]


@dataclass
class AttemptRecord:
    """1回の試行の記録。"""

    strategy: str
    attempt: int
    error: Optional[ErrorInfo] = None

    def __str__(self) -> str:
        result = "成功" if self.error is None else str(self.error)
        return f"{self.strategy}#{self.attempt}: {result}"


@dataclass
class ActionOutcome(Generic[T]):
    """perform の実行結果。

    Attributes:
        succeeded: 成功したかどうか
        attempts_used: 全戦略を通した試行回数
        strategy_used: 成功した戦略（"primary" または "fallback:<name>"）
        value: 成功したアクションの戻り値
        error: 直前に失敗した試行のエラー（成功時も参考として保持）
        elapsed_ms: 全体の経過時間（ミリ秒）
        history: 試行履歴
    """

    succeeded: bool
    attempts_used: int
    strategy_used: str
    value: Optional[T] = None
    error: Optional[ErrorInfo] = None
    elapsed_ms: float = 0.0
    history: list[AttemptRecord] = field(default_factory=list)


# ---------------------------------------------------------------------------
# 実行エンジン本体
# ---------------------------------------------------------------------------

class ResilientActionExecutor:
    """リトライとフォールバックで UI 操作を実行する。

    使用例::

        executor = ResilientActionExecutor(browser, settings.timeouts,
                                           RetryPolicy.from_settings(settings.retry))
        outcome = await executor.click("#submit_search")
        outcome = await executor.perform(
            primary=lambda: browser.click(selector),
            fallbacks=[ActionStrategy("script-click", script_click)],
            policy=RetryPolicy(max_attempts=2, base_delay_ms=200),
        )
    """

    def __init__(
        self,
        browser: Optional[BrowserCapability] = None,
        timeouts: Optional[TimeoutSettings] = None,
        policy: Optional[RetryPolicy] = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Clock = time.monotonic,
    ) -> None:
        """ResilientActionExecutor を初期化する。

        Args:
            browser: ブラウザ機能（失敗時の URL・タイトル取得と click/fill に使用）
            timeouts: タイムアウト設定（click/fill の要素待機に使用）
            policy: 既定のリトライ方針
            sleep: 秒数を受け取る非同期スリープ関数
            clock: 単調増加する秒数を返す時計関数
        """
        if timeouts is None:
            from ..config import TimeoutSettings

            timeouts = TimeoutSettings()
        self._browser = browser
        self._timeouts = timeouts
        self._policy = policy or RetryPolicy()
        self._sleep = sleep
        self._clock = clock

    @property
    def default_policy(self) -> RetryPolicy:
        return self._policy

    # -------------------------------------------------------------------
    # パブリック API
    # -------------------------------------------------------------------

    async def perform(
        self,
        primary: Action[T],
        fallbacks: Sequence[Union[ActionStrategy[T], Action[T]]] = (),
        policy: Optional[RetryPolicy] = None,
        *,
        description: str = "action",
        deadline: Optional[Deadline] = None,
    ) -> ActionOutcome[T]:
        """プライマリ操作とフォールバックを順に試行する。

        試行は厳密に逐次で、並行した再試行は行わない。各試行の失敗後に
        policy.delay_ms(i) だけ待機する（全戦略の最後の試行の後は待機しない）。

        Args:
            primary: プライマリ操作
            fallbacks: フォールバック操作（指定順に試行）。名前なしの関数は __name__ を使う
            policy: リトライ方針（省略時はコンストラクタの既定値）
            description: ログ・エラーメッセージ用のアクションの説明
            deadline: 全体の期限。尽きた時点で以降の試行を行わない

        Returns:
            成功した戦略と試行回数を含む ActionOutcome

        Raises:
            AllStrategiesExhaustedError: 全戦略の全試行が失敗した場合
        """
        policy = policy or self._policy
        strategies = [(PRIMARY, primary)] + [
            (FALLBACK_PREFIX + name, action) for name, action in _normalize(fallbacks)
        ]
        start = self._clock()
        errors: list[tuple[str, int, BaseException]] = []
        history: list[AttemptRecord] = []
        attempts_used = 0

        for strategy_index, (name, action) in enumerate(strategies):
            if strategy_index > 0:
                logger.warning("'%s': フォールバック '%s' を試行します", description, name)

            for attempt in range(policy.max_attempts):
                if deadline is not None and deadline.expired:
                    logger.error("'%s': 期限切れのため試行を中止しました", description)
                    raise await self._exhausted(description, errors, history, start)

                attempts_used += 1
                try:
                    value = await self._invoke(action, deadline)
                except Exception as exc:
                    errors.append((name, attempt + 1, exc))
                    history.append(AttemptRecord(name, attempt + 1, ErrorInfo.from_exception(exc)))
                    logger.info(
                        "'%s': %s の試行 %d/%d が失敗: %s",
                        description, name, attempt + 1, policy.max_attempts, exc,
                    )
                    if isinstance(exc, policy.escalate_on):
                        logger.info("'%s': %s は再試行せず次の戦略へ進みます", description, type(exc).__name__)
                        break
                    is_last = (
                        strategy_index == len(strategies) - 1
                        and attempt == policy.max_attempts - 1
                    )
                    if not is_last:
                        await self._backoff(policy.delay_ms(attempt), deadline)
                    continue

                history.append(AttemptRecord(name, attempt + 1))
                elapsed_ms = (self._clock() - start) * 1000
                logger.debug(
                    "'%s': %s で成功しました（%d 回目, %.0fms）",
                    description, name, attempts_used, elapsed_ms,
                )
                return ActionOutcome(
                    succeeded=True,
                    attempts_used=attempts_used,
                    strategy_used=name,
                    value=value,
                    error=ErrorInfo.from_exception(errors[-1][2]) if errors else None,
                    elapsed_ms=elapsed_ms,
                    history=history,
                )

        logger.error("'%s': 全 %d 戦略が失敗しました", description, len(strategies))
        raise await self._exhausted(description, errors, history, start)

    async def click(
        self,
        selector: str,
        *,
        navigate_url: Optional[str] = None,
        allow_force: bool = False,
        policy: Optional[RetryPolicy] = None,
        deadline: Optional[Deadline] = None,
    ) -> ActionOutcome[None]:
        """要素をクリックする。

        プライマリ: 可視化待機 → スクロール → 通常クリック。
        フォールバック: force-click（allow_force 時）→ script-click →
        navigate（navigate_url 指定時、派生 URL へ直接遷移）。

        Args:
            selector: クリック対象のセレクタ
            navigate_url: 最終フォールバックで直接遷移する URL
            allow_force: 操作可能性チェックを省略した強制クリックを試すか
            policy: リトライ方針
            deadline: 全体の期限
        """
        browser = self._require_browser()
        if not selector:
            raise ValueError("selector は空にできません")
        wait_ms = self._timeouts.element_wait

        async def _click() -> None:
            await browser.wait_for_selector(selector, state="visible", timeout_ms=wait_ms)
            await browser.scroll_into_view(selector)
            await browser.click(selector, timeout_ms=wait_ms)

        async def _force_click() -> None:
            await browser.click(selector, force=True, timeout_ms=wait_ms)

        async def _script_click() -> None:
            await browser.evaluate(_SCRIPT_CLICK, selector)

        fallbacks: list[ActionStrategy[None]] = []
        if allow_force:
            fallbacks.append(ActionStrategy("force-click", _force_click))
        fallbacks.append(ActionStrategy("script-click", _script_click))
        if navigate_url:
            fallbacks.append(ActionStrategy("navigate", lambda: browser.navigate(navigate_url)))

        return await self.perform(
            _click, fallbacks, policy, description=f"click {selector}", deadline=deadline,
        )

    async def fill(
        self,
        selector: str,
        value: str,
        *,
        policy: Optional[RetryPolicy] = None,
        deadline: Optional[Deadline] = None,
    ) -> ActionOutcome[None]:
        """入力フィールドに値を入力する。

        プライマリ: 可視化待機 → fill。フォールバック: script-fill
        （value を直接設定し input / change イベントを発火）。
        """
        browser = self._require_browser()
        if not selector:
            raise ValueError("selector は空にできません")
        wait_ms = self._timeouts.element_wait

        async def _fill() -> None:
            await browser.wait_for_selector(selector, state="visible", timeout_ms=wait_ms)
            await browser.fill(selector, value, timeout_ms=wait_ms)

        async def _script_fill() -> None:
            await browser.evaluate(_SCRIPT_FILL, [selector, value])

        return await self.perform(
            _fill,
            [ActionStrategy("script-fill", _script_fill)],
            policy,
            description=f"fill {selector}",
            deadline=deadline,
        )

    # -------------------------------------------------------------------
    # 内部ヘルパー
    # -------------------------------------------------------------------

    def _require_browser(self) -> BrowserCapability:
        if self._browser is None:
            raise RuntimeError("click / fill にはブラウザ機能の指定が必要です")
        return self._browser

    async def _invoke(self, action: Action[T], deadline: Optional[Deadline]) -> T:
        """アクションを実行する。deadline があれば残り時間で打ち切る。"""
        if deadline is None:
            return await action()
        return await asyncio.wait_for(action(), timeout=deadline.remaining_ms() / 1000.0)

    async def _backoff(self, delay_ms: float, deadline: Optional[Deadline]) -> None:
        if deadline is not None:
            delay_ms = deadline.clip(delay_ms)
        if delay_ms > 0:
            logger.debug("%.0fms 待機してから再試行します", delay_ms)
            await self._sleep(delay_ms / 1000.0)

    async def _exhausted(
        self,
        description: str,
        errors: list[tuple[str, int, BaseException]],
        history: list[AttemptRecord],
        start: float,
    ) -> AllStrategiesExhaustedError:
        """FailureContext を添付した AllStrategiesExhaustedError を生成する。

        最後に発生した例外を __cause__ に設定する。
        """
        context = await capture_failure_context(
            self._browser,
            description,
            elapsed_ms=(self._clock() - start) * 1000,
            attempt_history=[str(record) for record in history],
        )
        error = AllStrategiesExhaustedError(description, errors, failure_context=context)
        if errors:
            error.__cause__ = errors[-1][2]
        return error


# ---------------------------------------------------------------------------
# ヘルパー関数
# ---------------------------------------------------------------------------

def _normalize(
    fallbacks: Sequence[Union[ActionStrategy[T], Action[T]]],
) -> list[tuple[str, Action[T]]]:
    """フォールバック指定を (名前, アクション) のリストに変換する。"""
    normalized: list[tuple[str, Action[T]]] = []
    for index, fallback in enumerate(fallbacks):
        if isinstance(fallback, ActionStrategy):
            normalized.append((fallback.name, fallback.action))
        else:
            name = getattr(fallback, "__name__", "") or f"fallback-{index + 1}"
            if name == "<lambda>":
                name = f"fallback-{index + 1}"
            normalized.append((name, fallback))
    return normalized


async def capture_failure_context(
    browser: Optional[BrowserCapability],
    selector_or_condition: str,
    *,
    elapsed_ms: float,
    attempt_history: Optional[list[str]] = None,
    missing_selectors: Optional[list[str]] = None,
) -> FailureContext:
    """失敗時のページ状態を FailureContext として取得する。

    URL・タイトルの取得に失敗しても元のエラーを隠さないよう、
    取得できなかった項目は空文字列のままにする。
    """
    context = FailureContext(
        selector_or_condition=selector_or_condition,
        elapsed_ms=elapsed_ms,
        attempt_history=list(attempt_history or []),
        missing_selectors=list(missing_selectors or []),
    )
    if browser is None:
        return context
    try:
        context.page_url = browser.url
        context.page_title = await browser.title()
    except Exception as exc:
        logger.warning("失敗時のページ情報の取得に失敗: %s", exc)
    return context
