"""
段階的待機エンジン — 精度の高い順に並べた待機ステップのカスケード

UI の準備完了シグナルはブラウザや環境によって信頼性が異なるため、
精度の高い待機から順に試し、タイムアウトしたら次の（より粗い）待機に進む。
最後のステップには失敗しない固定遅延を置くことを想定している。

主な機能:
  - WaitStep: 名前付き・制限時間付きの待機ステップ
  - ProgressiveWaitEngine.run: ステップを順に実行し、最初に成功した時点で終了
  - page_ready_steps / search_results_steps / mutation_settle_steps: 定型カスケード
  - fixed_delay_step: 最終ステップ専用の固定遅延

エンジンは例外を送出しない。全ステップがタイムアウトしても正常に戻り、
結果（ProgressiveWaitResult.satisfied）で判別できる。硬い失敗が必要な
呼び出し側は run の後に自分で検証すること。
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Sequence

from .deadline import Deadline, effective_timeout
from .errors import ErrorInfo, is_timeout_error

if TYPE_CHECKING:
    from playwright.async_api import Response

    from ..browser import BrowserCapability
    from ..config import TimeoutSettings

logger = logging.getLogger(__name__)

FIXED_DELAY_PREFIX = "fixed delay"
DEFAULT_FALLBACK_DELAY_MS = 2_000


# ---------------------------------------------------------------------------
# データクラス
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class WaitStep:
    """段階的待機の1ステップ。

    Attributes:
        name: ステップ名（ログ・結果に使用）
        execute: 待機本体。正常終了で「準備完了」とみなす
        timeout_ms: このステップの制限時間（ミリ秒）
    """

    name: str
    execute: Callable[[], Awaitable[Any]]
    timeout_ms: int

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("WaitStep の name は空にできません")
        if self.timeout_ms < 0:
            raise ValueError(f"WaitStep の timeout_ms は 0 以上を指定してください: {self.timeout_ms}")

    @property
    def is_fixed_delay(self) -> bool:
        return self.name.startswith(FIXED_DELAY_PREFIX)


class StepStatus(enum.Enum):
    """ステップの実行結果。"""

    READY = "ready"
    TIMEOUT = "timeout"
    ERROR = "error"
    SKIPPED = "skipped"


@dataclass
class StepOutcome:
    """1ステップの実行結果。

    Attributes:
        name: ステップ名
        status: 実行結果
        elapsed_ms: 実行時間（ミリ秒）
        error: TIMEOUT / ERROR の場合の例外情報
    """

    name: str
    status: StepStatus
    elapsed_ms: float = 0.0
    error: Optional[ErrorInfo] = None


@dataclass
class ProgressiveWaitResult:
    """段階的待機全体の結果。

    Attributes:
        satisfied_by: 成功したステップ名（全ステップ失敗時は None）
        outcomes: 各ステップの実行結果（実行順）
    """

    satisfied_by: Optional[str] = None
    outcomes: list[StepOutcome] = field(default_factory=list)

    @property
    def satisfied(self) -> bool:
        return self.satisfied_by is not None


# ---------------------------------------------------------------------------
# エンジン本体
# ---------------------------------------------------------------------------

class ProgressiveWaitEngine:
    """WaitStep のリストを順に実行する段階的待機エンジン。

    使用例::

        engine = ProgressiveWaitEngine()
        result = await engine.run(page_ready_steps(browser, settings.timeouts))
        if not result.satisfied:
            logger.info("全ステップがタイムアウトしました")
    """

    async def run(
        self,
        steps: Sequence[WaitStep],
        deadline: Optional[Deadline] = None,
    ) -> ProgressiveWaitResult:
        """ステップを順に実行し、最初に成功した時点で終了する。

        タイムアウトしたステップは次のステップへ進む合図として扱う。
        タイムアウト以外の例外は ERROR として記録し、同様に次へ進む。
        deadline が尽きた場合、残りのステップは SKIPPED として記録する。

        Args:
            steps: 精度の高い順に並べた待機ステップ
            deadline: 全体の期限

        Returns:
            各ステップの結果。ステップの失敗で例外を送出することはない

        Raises:
            ValueError: 固定遅延ステップが単独、または最後以外に置かれている場合
        """
        validate_steps(steps)
        result = ProgressiveWaitResult()

        for index, step in enumerate(steps):
            if deadline is not None and deadline.expired:
                for skipped in steps[index:]:
                    result.outcomes.append(StepOutcome(skipped.name, StepStatus.SKIPPED))
                logger.info("期限切れのため残り %d ステップをスキップしました", len(steps) - index)
                return result

            outcome = await self._run_step(step, deadline)
            result.outcomes.append(outcome)

            if outcome.status is StepStatus.READY:
                result.satisfied_by = step.name
                logger.debug("待機ステップ '%s' で準備完了（%.0fms）", step.name, outcome.elapsed_ms)
                return result

        if steps:
            logger.info(
                "全 %d 待機ステップが成功しませんでした（%s）。処理を続行します",
                len(steps), ", ".join(o.name for o in result.outcomes),
            )
        return result

    async def _run_step(self, step: WaitStep, deadline: Optional[Deadline]) -> StepOutcome:
        """1ステップを制限時間付きで実行する。"""
        timeout_ms = effective_timeout(step.timeout_ms, deadline)
        start = time.perf_counter()
        try:
            await asyncio.wait_for(step.execute(), timeout=timeout_ms / 1000.0)
        except Exception as exc:
            elapsed = (time.perf_counter() - start) * 1000
            if is_timeout_error(exc):
                logger.debug(
                    "待機ステップ '%s' が %.0fms でタイムアウト。次のステップへ進みます",
                    step.name, timeout_ms,
                )
                return StepOutcome(step.name, StepStatus.TIMEOUT, elapsed, ErrorInfo.from_exception(exc))
            logger.warning(
                "待機ステップ '%s' で予期しないエラー: %s。次のステップへ進みます",
                step.name, exc,
            )
            return StepOutcome(step.name, StepStatus.ERROR, elapsed, ErrorInfo.from_exception(exc))
        return StepOutcome(step.name, StepStatus.READY, (time.perf_counter() - start) * 1000)


# ---------------------------------------------------------------------------
# ステップ生成
# ---------------------------------------------------------------------------

def fixed_delay_step(delay_ms: int = DEFAULT_FALLBACK_DELAY_MS) -> WaitStep:
    """カスケードの最終ステップ専用の固定遅延ステップを生成する。

    制限時間には遅延より余裕を持たせ、このステップ自体は失敗しない。
    """
    async def _delay() -> None:
        await asyncio.sleep(delay_ms / 1000.0)

    return WaitStep(f"{FIXED_DELAY_PREFIX} {delay_ms}ms", _delay, delay_ms + 1_000)


def validate_steps(steps: Sequence[WaitStep]) -> Sequence[WaitStep]:
    """固定遅延ステップが最後以外に置かれていないことを検証する。

    Raises:
        ValueError: 固定遅延が単独、または最終位置以外にある場合
    """
    for index, step in enumerate(steps):
        if not step.is_fixed_delay:
            continue
        if len(steps) == 1:
            raise ValueError("固定遅延を単独の待機戦略として使用することはできません")
        if index != len(steps) - 1:
            raise ValueError(
                f"固定遅延ステップ '{step.name}' は最後のステップにのみ配置できます"
            )
    return steps


def page_ready_steps(
    browser: BrowserCapability,
    timeouts: TimeoutSettings,
    fallback_delay_ms: int = DEFAULT_FALLBACK_DELAY_MS,
) -> list[WaitStep]:
    """ページ読み込み完了のカスケード: DOMContentLoaded → ネットワークアイドル → 固定遅延。"""
    return list(validate_steps([
        WaitStep(
            "DOMContentLoaded",
            lambda: browser.wait_for_load_state("domcontentloaded", timeout_ms=timeouts.short),
            timeouts.short,
        ),
        WaitStep(
            "network idle",
            lambda: browser.wait_for_load_state("networkidle", timeout_ms=timeouts.network_idle),
            timeouts.network_idle,
        ),
        fixed_delay_step(fallback_delay_ms),
    ]))


def search_results_steps(
    browser: BrowserCapability,
    product_selector: str,
    timeouts: TimeoutSettings,
    fallback_delay_ms: int = DEFAULT_FALLBACK_DELAY_MS,
) -> list[WaitStep]:
    """検索結果表示のカスケード: 商品要素の可視化 → ネットワークアイドル → 固定遅延。"""
    if not product_selector:
        raise ValueError("product_selector は空にできません")
    return list(validate_steps([
        WaitStep(
            "product elements visible",
            lambda: browser.wait_for_selector(
                product_selector, state="visible", timeout_ms=timeouts.short
            ),
            timeouts.short,
        ),
        WaitStep(
            "network idle",
            lambda: browser.wait_for_load_state("networkidle", timeout_ms=timeouts.network_idle),
            timeouts.network_idle,
        ),
        fixed_delay_step(fallback_delay_ms),
    ]))


def mutation_settle_steps(
    browser: BrowserCapability,
    response_predicate: Callable[[Response], bool],
    selector: str,
    previous_count: int,
    timeouts: TimeoutSettings,
    fallback_delay_ms: int = DEFAULT_FALLBACK_DELAY_MS,
) -> list[WaitStep]:
    """DOM 更新を伴う操作（カート削除等）の反映待ちカスケード。

    ネットワーク応答の監視を先に、DOM 件数のポーリングを次に、
    最後に固定遅延を置く。応答の監視は run の開始後に届いたものだけを
    捕捉するため、取り逃した場合は DOM 件数のポーリングで検出する。
    previous_count は操作の実行前に数えておくこと。

    Args:
        browser: ブラウザ機能
        response_predicate: 対象レスポンスを判定する関数
        selector: 件数を監視する要素のセレクタ
        previous_count: 操作前の要素数
        timeouts: タイムアウト設定
        fallback_delay_ms: 最終ステップの固定遅延
    """
    from .readiness import wait_for_count_change

    if not selector:
        raise ValueError("selector は空にできません")
    return list(validate_steps([
        WaitStep(
            "network response",
            lambda: browser.wait_for_response(response_predicate, timeout_ms=timeouts.network_idle),
            timeouts.network_idle,
        ),
        WaitStep(
            "element count changed",
            lambda: wait_for_count_change(browser, selector, previous_count, timeouts.short),
            timeouts.short,
        ),
        fixed_delay_step(fallback_delay_ms),
    ]))
