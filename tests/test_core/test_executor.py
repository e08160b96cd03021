"""
耐障害アクション実行のユニットテスト

BrowserCapability はモック、待機（sleep）は記録用の関数に差し替える。

テスト対象:
  - RetryPolicy: 検証・待機時間の計算
  - ResilientActionExecutor.perform: リトライ・フォールバック・集約エラー
  - ResilientActionExecutor.click / fill: 定型のフォールバック
"""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from shopcheck.config import RetrySettings, TimeoutSettings
from shopcheck.core.deadline import Deadline
from shopcheck.core.errors import (
    AllStrategiesExhaustedError,
    BrowserTimeoutError,
    ClickInterceptedError,
)
from shopcheck.core.executor import (
    ActionStrategy,
    ResilientActionExecutor,
    RetryPolicy,
)


# ---------------------------------------------------------------------------
# ヘルパー
# ---------------------------------------------------------------------------

class _SleepRecorder:
    """asyncio.sleep の代わりに待機時間（秒）を記録する。"""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)

    @property
    def total_ms(self) -> float:
        return sum(self.delays) * 1000


def _make_action(results: list):
    """呼び出しごとに results の要素を順に返す（例外なら送出する）アクションを生成する。"""
    calls = {"count": 0}

    async def action():
        index = min(calls["count"], len(results) - 1)
        calls["count"] += 1
        result = results[index]
        if isinstance(result, BaseException):
            raise result
        return result

    return action, calls


def _make_executor(browser=None, timeouts=None, policy=None):
    sleeper = _SleepRecorder()
    executor = ResilientActionExecutor(browser, timeouts, policy, sleep=sleeper)
    return executor, sleeper


# ===========================================================================
# テスト: RetryPolicy
# ===========================================================================

class TestRetryPolicy:
    """RetryPolicy のテスト。"""

    def test_defaults(self) -> None:
        policy = RetryPolicy()
        assert policy.max_attempts == 3
        assert policy.base_delay_ms == 1_000
        assert policy.backoff_multiplier == 2.0
        assert policy.escalate_on == (ClickInterceptedError,)

    def test_delay_is_exponential(self) -> None:
        """試行 i の待機時間が base * multiplier ** i であること。"""
        policy = RetryPolicy(max_attempts=3, base_delay_ms=100, backoff_multiplier=2)
        assert [policy.delay_ms(i) for i in range(3)] == [100, 200, 400]

    @pytest.mark.parametrize(
        "kwargs, match",
        [
            ({"max_attempts": 0}, "max_attempts"),
            ({"base_delay_ms": -1}, "base_delay_ms"),
            ({"backoff_multiplier": 0.5}, "backoff_multiplier"),
        ],
    )
    def test_invalid_values(self, kwargs: dict, match: str) -> None:
        with pytest.raises(ValueError, match=match):
            RetryPolicy(**kwargs)

    def test_from_settings(self) -> None:
        policy = RetryPolicy.from_settings(
            RetrySettings(max_attempts=5, delay_ms=250, backoff_multiplier=1.5)
        )
        assert policy.max_attempts == 5
        assert policy.base_delay_ms == 250
        assert policy.backoff_multiplier == 1.5

    @settings(max_examples=50)
    @given(
        base=st.integers(min_value=0, max_value=5_000),
        multiplier=st.floats(min_value=1.0, max_value=4.0, allow_nan=False),
        attempt=st.integers(min_value=0, max_value=6),
    )
    def test_delay_never_decreases(self, base: int, multiplier: float, attempt: int) -> None:
        """待機時間は試行ごとに減少しないこと。"""
        policy = RetryPolicy(base_delay_ms=base, backoff_multiplier=multiplier)
        assert policy.delay_ms(0) == base
        assert policy.delay_ms(attempt + 1) >= policy.delay_ms(attempt)


# ===========================================================================
# テスト: ResilientActionExecutor.perform
# ===========================================================================

class TestPerform:
    """ResilientActionExecutor.perform のテスト。"""

    async def test_primary_succeeds_first_time(self) -> None:
        """常に成功するプライマリは1回の試行で、待機なしで返ること。"""
        executor, sleeper = _make_executor()
        primary, calls = _make_action(["ok"])

        outcome = await executor.perform(primary)

        assert outcome.succeeded is True
        assert outcome.attempts_used == 1
        assert outcome.strategy_used == "primary"
        assert outcome.value == "ok"
        assert outcome.error is None
        assert calls["count"] == 1
        assert sleeper.delays == []

    async def test_primary_recovers_on_retry(self) -> None:
        executor, sleeper = _make_executor()
        primary, _ = _make_action([RuntimeError("一時的なエラー"), "ok"])
        policy = RetryPolicy(max_attempts=3, base_delay_ms=100)

        outcome = await executor.perform(primary, policy=policy)

        assert outcome.strategy_used == "primary"
        assert outcome.attempts_used == 2
        assert outcome.error is not None
        assert outcome.error.type == "RuntimeError"
        assert sleeper.delays == [0.1]

    async def test_fallback_after_primary_exhausted(self) -> None:
        """プライマリが3回失敗した後、フォールバックが成功すること。"""
        executor, sleeper = _make_executor()
        primary, primary_calls = _make_action([RuntimeError("クリックできません")])
        fallback, fallback_calls = _make_action(["ok"])
        policy = RetryPolicy(max_attempts=3, base_delay_ms=100, backoff_multiplier=2)

        outcome = await executor.perform(
            primary, [ActionStrategy("script-click", fallback)], policy
        )

        assert outcome.succeeded is True
        assert outcome.attempts_used == 4
        assert outcome.strategy_used == "fallback:script-click"
        assert primary_calls["count"] == 3
        assert fallback_calls["count"] == 1
        # 100 + 200 + 400ms のバックオフの後にフォールバックが実行される
        assert sleeper.delays == [0.1, 0.2, 0.4]
        assert sleeper.total_ms >= 700

    async def test_escalation_skips_remaining_retries(self) -> None:
        """escalate_on の例外ではリトライせず、待機なしで次の戦略へ進むこと。"""
        executor, sleeper = _make_executor()
        primary, primary_calls = _make_action([ClickInterceptedError("遮られました")])
        fallback, _ = _make_action(["ok"])

        outcome = await executor.perform(
            primary, [ActionStrategy("script-click", fallback)], RetryPolicy(max_attempts=3)
        )

        assert outcome.attempts_used == 2
        assert outcome.strategy_used == "fallback:script-click"
        assert primary_calls["count"] == 1
        assert sleeper.delays == []

    async def test_all_strategies_exhausted(self, mock_browser: MagicMock) -> None:
        """全戦略が失敗した場合、全エラーを発生順に集約して送出すること。"""
        executor, sleeper = _make_executor(browser=mock_browser)
        primary, _ = _make_action([RuntimeError("primary failed")])
        fallback, _ = _make_action([ValueError("fallback failed")])
        policy = RetryPolicy(max_attempts=2, base_delay_ms=10)

        with pytest.raises(AllStrategiesExhaustedError) as exc_info:
            await executor.perform(
                primary,
                [ActionStrategy("script-click", fallback)],
                policy,
                description="click #submit_search",
            )

        error = exc_info.value
        assert [(name, attempt) for name, attempt, _ in error.errors] == [
            ("primary", 1),
            ("primary", 2),
            ("fallback:script-click", 1),
            ("fallback:script-click", 2),
        ]
        assert isinstance(error.__cause__, ValueError)
        assert "click #submit_search" in str(error)
        assert "primary, fallback:script-click" in str(error)
        # 最後の試行の後は待機しない
        assert len(sleeper.delays) == 3

    async def test_exhausted_failure_context(self, mock_browser: MagicMock) -> None:
        """終端エラーにページの URL・タイトルと試行履歴が添付されること。"""
        executor, _ = _make_executor(browser=mock_browser)
        primary, _ = _make_action([RuntimeError("boom")])

        with pytest.raises(AllStrategiesExhaustedError) as exc_info:
            await executor.perform(primary, policy=RetryPolicy(max_attempts=1))

        context = exc_info.value.failure_context
        assert context is not None
        assert context.page_url == "https://automationexercise.com/products"
        assert context.page_title == "Automation Exercise - All Products"
        assert context.attempt_history == ["primary#1: RuntimeError: boom"]
        assert "https://automationexercise.com/products" in str(exc_info.value)

    async def test_failure_context_without_browser(self) -> None:
        executor, _ = _make_executor()
        primary, _ = _make_action([RuntimeError("boom")])

        with pytest.raises(AllStrategiesExhaustedError) as exc_info:
            await executor.perform(primary, policy=RetryPolicy(max_attempts=1))

        assert exc_info.value.failure_context.page_url == ""

    async def test_title_failure_does_not_hide_action_error(self, mock_browser: MagicMock) -> None:
        """タイトル取得が失敗しても元の終端エラーが送出されること。"""
        mock_browser.title.side_effect = RuntimeError("ページが閉じられました")
        executor, _ = _make_executor(browser=mock_browser)
        primary, _ = _make_action([RuntimeError("boom")])

        with pytest.raises(AllStrategiesExhaustedError):
            await executor.perform(primary, policy=RetryPolicy(max_attempts=1))

    async def test_expired_deadline_stops_attempts(self) -> None:
        """期限切れの場合は試行せずに終端エラーを送出すること。"""
        executor, _ = _make_executor()
        primary, calls = _make_action(["ok"])

        with pytest.raises(AllStrategiesExhaustedError) as exc_info:
            await executor.perform(primary, deadline=Deadline(0))

        assert calls["count"] == 0
        assert exc_info.value.errors == []

    async def test_deadline_cuts_hanging_action(self) -> None:
        """応答しないアクションは deadline の残り時間で打ち切られること。"""
        executor, _ = _make_executor()

        async def hanging():
            await asyncio.sleep(10)

        with pytest.raises(AllStrategiesExhaustedError) as exc_info:
            await executor.perform(
                hanging, policy=RetryPolicy(max_attempts=1), deadline=Deadline(50)
            )

        assert len(exc_info.value.errors) == 1

    async def test_callable_fallback_names(self) -> None:
        """名前付き関数は __name__、ラムダは連番の名前になること。"""
        executor, _ = _make_executor()
        primary, _ = _make_action([RuntimeError("x")])
        failing, _ = _make_action([RuntimeError("y")])

        async def navigate_directly():
            raise RuntimeError("z")

        with pytest.raises(AllStrategiesExhaustedError) as exc_info:
            await executor.perform(
                primary,
                [lambda: failing(), navigate_directly],
                RetryPolicy(max_attempts=1, base_delay_ms=0),
            )

        names = [name for name, _, _ in exc_info.value.errors]
        assert names == ["primary", "fallback:fallback-1", "fallback:navigate_directly"]

    @settings(max_examples=25, deadline=None)
    @given(
        max_attempts=st.integers(min_value=1, max_value=4),
        fallback_count=st.integers(min_value=0, max_value=3),
    )
    def test_attempt_count_when_all_fail(self, max_attempts: int, fallback_count: int) -> None:
        """全試行が失敗した場合の試行回数は max_attempts × 戦略数であること。"""
        executor, _ = _make_executor()
        policy = RetryPolicy(max_attempts=max_attempts, base_delay_ms=0)
        primary, _ = _make_action([RuntimeError("x")])
        fallbacks = [
            ActionStrategy(f"f{i}", _make_action([RuntimeError("y")])[0])
            for i in range(fallback_count)
        ]

        with pytest.raises(AllStrategiesExhaustedError) as exc_info:
            asyncio.run(executor.perform(primary, fallbacks, policy))

        assert len(exc_info.value.errors) == max_attempts * (1 + fallback_count)


# ===========================================================================
# テスト: click / fill
# ===========================================================================

class TestClickAndFill:
    """ResilientActionExecutor.click / fill のテスト。"""

    async def test_click_primary(self, mock_browser: MagicMock, fast_timeouts: TimeoutSettings) -> None:
        """可視化待機 → スクロール → クリックの順に実行されること。"""
        executor, _ = _make_executor(mock_browser, fast_timeouts)

        outcome = await executor.click("#submit_search")

        assert outcome.strategy_used == "primary"
        mock_browser.wait_for_selector.assert_awaited_once_with(
            "#submit_search", state="visible", timeout_ms=fast_timeouts.element_wait
        )
        mock_browser.scroll_into_view.assert_awaited_once_with("#submit_search")
        mock_browser.click.assert_awaited_once_with(
            "#submit_search", timeout_ms=fast_timeouts.element_wait
        )

    async def test_click_intercepted_uses_script_click(
        self, mock_browser: MagicMock, fast_timeouts: TimeoutSettings
    ) -> None:
        """クリックが一度遮られたらスクリプト経由クリックで成功すること。"""
        mock_browser.click.side_effect = ClickInterceptedError("<div class='overlay'> intercepts pointer events")
        executor, sleeper = _make_executor(mock_browser, fast_timeouts)

        outcome = await executor.click("a[data-product-id='1'].add-to-cart")

        assert outcome.attempts_used == 2
        assert outcome.strategy_used == "fallback:script-click"
        mock_browser.evaluate.assert_awaited_once()
        assert mock_browser.evaluate.call_args.args[1] == "a[data-product-id='1'].add-to-cart"
        assert sleeper.delays == []

    async def test_click_fallback_order(
        self, mock_browser: MagicMock, fast_timeouts: TimeoutSettings
    ) -> None:
        """force-click → script-click → navigate の順に試行されること。"""
        mock_browser.click.side_effect = BrowserTimeoutError("timeout")
        mock_browser.evaluate.side_effect = RuntimeError("element not found")
        executor, _ = _make_executor(mock_browser, fast_timeouts)

        outcome = await executor.click(
            "a[href='/products']",
            navigate_url="https://automationexercise.com/products",
            allow_force=True,
            policy=RetryPolicy(max_attempts=1, base_delay_ms=0),
        )

        assert outcome.strategy_used == "fallback:navigate"
        assert [record.strategy for record in outcome.history] == [
            "primary",
            "fallback:force-click",
            "fallback:script-click",
            "fallback:navigate",
        ]
        mock_browser.navigate.assert_awaited_once_with("https://automationexercise.com/products")

    async def test_click_without_navigate_url(
        self, mock_browser: MagicMock, fast_timeouts: TimeoutSettings
    ) -> None:
        mock_browser.click.side_effect = BrowserTimeoutError("timeout")
        mock_browser.evaluate.side_effect = RuntimeError("element not found")
        executor, _ = _make_executor(mock_browser, fast_timeouts)

        with pytest.raises(AllStrategiesExhaustedError) as exc_info:
            await executor.click("#missing", policy=RetryPolicy(max_attempts=1, base_delay_ms=0))

        names = [name for name, _, _ in exc_info.value.errors]
        assert names == ["primary", "fallback:script-click"]

    async def test_click_empty_selector(self, mock_browser: MagicMock) -> None:
        executor, _ = _make_executor(mock_browser)
        with pytest.raises(ValueError, match="selector"):
            await executor.click("")

    async def test_click_requires_browser(self) -> None:
        executor, _ = _make_executor()
        with pytest.raises(RuntimeError, match="ブラウザ"):
            await executor.click("#submit_search")

    async def test_fill_primary(self, mock_browser: MagicMock, fast_timeouts: TimeoutSettings) -> None:
        executor, _ = _make_executor(mock_browser, fast_timeouts)

        outcome = await executor.fill("#search_product", "Blue Top")

        assert outcome.strategy_used == "primary"
        mock_browser.fill.assert_awaited_once_with(
            "#search_product", "Blue Top", timeout_ms=fast_timeouts.element_wait
        )

    async def test_fill_falls_back_to_script(
        self, mock_browser: MagicMock, fast_timeouts: TimeoutSettings
    ) -> None:
        """fill が失敗し続けたらスクリプトで値を設定すること。"""
        mock_browser.fill.side_effect = BrowserTimeoutError("timeout")
        executor, _ = _make_executor(mock_browser, fast_timeouts)

        outcome = await executor.fill(
            "#search_product", "Blue Top", policy=RetryPolicy(max_attempts=2, base_delay_ms=10)
        )

        assert outcome.strategy_used == "fallback:script-fill"
        assert outcome.attempts_used == 3
        assert mock_browser.evaluate.call_args.args[1] == ["#search_product", "Blue Top"]
