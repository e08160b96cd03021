"""
準備完了検出 — モーダル等の一時的 UI と DOM 変化の待機

CSS 上の可視だけでは「操作可能」とは限らない。フェードイン中のモーダルは
可視でも透明度が 1 未満で、内部の要素がまだ描画されていないことがある。
ここでは次の条件を全て満たした時点を「準備完了」とみなす:

  - コンテナ要素が可視
  - コンテナの計算済み opacity が 1（アニメーション完了）
  - 競合するオーバーレイが可視でない
  - 必須の子要素が全て存在する

状態遷移:
  ABSENT → APPEARING → VISIBLE_NOT_READY → READY | TIMED_OUT

判定は ConditionWaiter による状態のポーリングで行い、固定遅延は使用しない。
タイムアウト時は未検出の子要素を含む FailureContext を添付した
ModalNotReadyError を送出する。
"""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Sequence

from .deadline import Deadline
from .errors import (
    ConditionTimeoutError,
    ModalNotReadyError,
    ReadinessProbe,
    ReadinessStatus,
)
from .executor import capture_failure_context
from .waits import ConditionWaiter

if TYPE_CHECKING:
    from ..browser import BrowserCapability
    from ..config import TimeoutSettings

logger = logging.getLogger(__name__)

DEFAULT_MODAL_POLL_INTERVAL_MS = 100
DEFAULT_COUNT_POLL_INTERVAL_MS = 250

_SNAPSHOT_SCRIPT = """
([container, children, overlays]) => {
    const isVisible = (node) => {
        if (!node) return false;
        const style = window.getComputedStyle(node);
        const rect = node.getBoundingClientRect();
        return style.display !== 'none' && style.visibility !== 'hidden'
            && rect.width > 0 && rect.height > 0;
    };
    const root = document.querySelector(container);
    if (!root) {
        return { present: false, visible: false, opacity: 0,
                 blockingOverlays: [], missingChildren: children };
    }
    const opacity = parseFloat(window.getComputedStyle(root).opacity);
    return {
        present: true,
        visible: isVisible(root),
        opacity: Number.isNaN(opacity) ? 1 : opacity,
        blockingOverlays: overlays.filter(
            (sel) => Array.from(document.querySelectorAll(sel)).some(isVisible)),
        missingChildren: children.filter((sel) => !root.querySelector(sel)),
    };
}
"""


# ---------------------------------------------------------------------------
# 状態・データクラス
# ---------------------------------------------------------------------------

class ModalState(enum.Enum):
    """一時的 UI の状態。"""

    ABSENT = "absent"
    APPEARING = "appearing"
    VISIBLE_NOT_READY = "visible_not_ready"
    READY = "ready"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class ReadinessCondition:
    """名前付きの複合準備完了条件。

    Attributes:
        name: 条件名（ログ・エラーメッセージ用）
        container_selector: コンテナ要素のセレクタ
        required_child_selectors: コンテナ内に必須の子要素セレクタ
        competing_overlay_selectors: 可視であってはならないオーバーレイのセレクタ
        timeout_ms: 条件が成立するまでの制限時間（None なら検出器の既定値）
    """

    name: str
    container_selector: str
    required_child_selectors: tuple[str, ...] = ()
    competing_overlay_selectors: tuple[str, ...] = ()
    timeout_ms: Optional[int] = None


@dataclass
class ReadinessSnapshot:
    """1回の状態取得の結果。"""

    present: bool = False
    visible: bool = False
    opacity: float = 0.0
    blocking_overlays: list[str] = field(default_factory=list)
    missing_children: list[str] = field(default_factory=list)

    @property
    def ready(self) -> bool:
        return (
            self.visible
            and self.opacity >= 1.0
            and not self.blocking_overlays
            and not self.missing_children
        )

    @classmethod
    def from_payload(cls, payload: Any) -> ReadinessSnapshot:
        """ページ内スクリプトの戻り値から生成する。"""
        if not isinstance(payload, dict):
            raise ValueError(f"想定外の状態データです: {payload!r}")
        return cls(
            present=bool(payload.get("present")),
            visible=bool(payload.get("visible")),
            opacity=float(payload.get("opacity", 0.0)),
            blocking_overlays=list(payload.get("blockingOverlays") or []),
            missing_children=list(payload.get("missingChildren") or []),
        )

    def describe(self) -> str:
        return (
            f"present={self.present}, visible={self.visible}, opacity={self.opacity:g}, "
            f"blocking={self.blocking_overlays}, missing={self.missing_children}"
        )


# ---------------------------------------------------------------------------
# 検出器本体
# ---------------------------------------------------------------------------

class ModalReadinessDetector:
    """モーダル等の一時的 UI が操作可能になるまで待機する。

    使用例::

        detector = ModalReadinessDetector(browser, timeouts=settings.timeouts)
        await detector.open_and_wait(
            lambda: executor.click(add_to_cart_selector),
            "#cartModal",
            [".modal-content", "a[href='/view_cart']"],
        )
    """

    def __init__(
        self,
        browser: BrowserCapability,
        waiter: Optional[ConditionWaiter] = None,
        timeouts: Optional[TimeoutSettings] = None,
        poll_interval_ms: int = DEFAULT_MODAL_POLL_INTERVAL_MS,
    ) -> None:
        """ModalReadinessDetector を初期化する。

        Args:
            browser: ブラウザ機能
            waiter: 条件待機（省略時は poll_interval_ms で生成）
            timeouts: タイムアウト設定（既定の制限時間に medium を使用）
            poll_interval_ms: 状態取得の間隔（ミリ秒）
        """
        if timeouts is None:
            from ..config import TimeoutSettings

            timeouts = TimeoutSettings()
        self._browser = browser
        self._waiter = waiter or ConditionWaiter(poll_interval_ms=poll_interval_ms)
        self._poll_interval_ms = poll_interval_ms
        self._default_timeout_ms = timeouts.medium
        self._state = ModalState.ABSENT
        self._last_snapshot: Optional[ReadinessSnapshot] = None

    @property
    def state(self) -> ModalState:
        return self._state

    @property
    def last_snapshot(self) -> Optional[ReadinessSnapshot]:
        return self._last_snapshot

    # -------------------------------------------------------------------
    # パブリック API
    # -------------------------------------------------------------------

    async def snapshot(
        self,
        container_selector: str,
        required_child_selectors: Sequence[str] = (),
        competing_overlay_selectors: Sequence[str] = (),
    ) -> ReadinessSnapshot:
        """コンテナの現在の状態を1回取得する。"""
        payload = await self._browser.evaluate(
            _SNAPSHOT_SCRIPT,
            [
                container_selector,
                list(required_child_selectors),
                list(competing_overlay_selectors),
            ],
        )
        return ReadinessSnapshot.from_payload(payload)

    async def probe(
        self,
        container_selector: str,
        required_child_selectors: Sequence[str] = (),
        competing_overlay_selectors: Sequence[str] = (),
    ) -> ReadinessProbe:
        """状態を1回判定し、READY / NOT_READY / ERROR を返す。"""
        try:
            snap = await self.snapshot(
                container_selector, required_child_selectors, competing_overlay_selectors
            )
        except Exception as exc:
            return ReadinessProbe(ReadinessStatus.ERROR, detail=str(exc), error=exc)
        self._record(snap)
        if snap.ready:
            return ReadinessProbe(ReadinessStatus.READY)
        return ReadinessProbe(ReadinessStatus.NOT_READY, detail=snap.describe())

    async def wait_until_ready(
        self,
        container_selector: str,
        required_child_selectors: Sequence[str] = (),
        timeout_ms: Optional[int] = None,
        *,
        competing_overlay_selectors: Sequence[str] = (),
        deadline: Optional[Deadline] = None,
    ) -> ReadinessSnapshot:
        """コンテナが準備完了になるまで待機する。

        Args:
            container_selector: コンテナ要素のセレクタ
            required_child_selectors: コンテナ内に必須の子要素セレクタ
            timeout_ms: 制限時間（ミリ秒, 省略時は timeouts.medium）
            competing_overlay_selectors: 可視であってはならないオーバーレイのセレクタ
            deadline: 全体の期限

        Returns:
            準備完了時点の状態

        Raises:
            ModalNotReadyError: 制限時間内に準備完了にならなかった場合
        """
        if not container_selector:
            raise ValueError("container_selector は空にできません")
        children = list(required_child_selectors)
        overlays = list(competing_overlay_selectors)
        timeout_ms = self._default_timeout_ms if timeout_ms is None else timeout_ms
        start = time.perf_counter()
        self._last_snapshot = None
        ready_snapshot: Optional[ReadinessSnapshot] = None

        async def _is_ready() -> bool:
            nonlocal ready_snapshot
            snap = await self.snapshot(container_selector, children, overlays)
            self._record(snap)
            if snap.ready:
                ready_snapshot = snap
            return snap.ready

        try:
            await self._waiter.wait_until(
                _is_ready,
                timeout_ms,
                self._poll_interval_ms,
                description=f"{container_selector} ready",
                deadline=deadline,
            )
        except ConditionTimeoutError as exc:
            self._state = ModalState.TIMED_OUT
            raise await self._not_ready_error(
                container_selector, children, exc, (time.perf_counter() - start) * 1000
            ) from exc

        logger.info(
            "'%s' が準備完了になりました（%.0fms）",
            container_selector, (time.perf_counter() - start) * 1000,
        )
        return ready_snapshot

    async def wait_for(
        self, condition: ReadinessCondition, deadline: Optional[Deadline] = None
    ) -> ReadinessSnapshot:
        """ReadinessCondition が成立するまで待機する。"""
        logger.debug("準備完了条件 '%s' を待機します", condition.name)
        return await self.wait_until_ready(
            condition.container_selector,
            condition.required_child_selectors,
            condition.timeout_ms,
            competing_overlay_selectors=condition.competing_overlay_selectors,
            deadline=deadline,
        )

    async def open_and_wait(
        self,
        trigger: Callable[[], Awaitable[Any]],
        container_selector: str,
        required_child_selectors: Sequence[str] = (),
        timeout_ms: Optional[int] = None,
        *,
        competing_overlay_selectors: Sequence[str] = (),
        deadline: Optional[Deadline] = None,
    ) -> ReadinessSnapshot:
        """trigger（「カートに追加」のクリック等）を実行し、準備完了まで待機する。"""
        self._state = ModalState.ABSENT
        await trigger()
        self._state = ModalState.APPEARING
        logger.debug("'%s' の表示を待機します", container_selector)
        return await self.wait_until_ready(
            container_selector,
            required_child_selectors,
            timeout_ms,
            competing_overlay_selectors=competing_overlay_selectors,
            deadline=deadline,
        )

    async def wait_until_dismissed(
        self,
        container_selector: str,
        timeout_ms: Optional[int] = None,
        *,
        deadline: Optional[Deadline] = None,
    ) -> None:
        """コンテナが非表示（またはDOMから削除）になるまで待機する。

        Raises:
            ConditionTimeoutError: 制限時間内に非表示にならなかった場合
        """
        if not container_selector:
            raise ValueError("container_selector は空にできません")
        timeout_ms = self._default_timeout_ms if timeout_ms is None else timeout_ms

        async def _is_gone() -> bool:
            snap = await self.snapshot(container_selector)
            return not snap.visible

        await self._waiter.wait_until(
            _is_gone,
            timeout_ms,
            self._poll_interval_ms,
            description=f"{container_selector} dismissed",
            deadline=deadline,
        )
        self._state = ModalState.ABSENT
        self._last_snapshot = None

    # -------------------------------------------------------------------
    # 内部ヘルパー
    # -------------------------------------------------------------------

    def _record(self, snap: ReadinessSnapshot) -> None:
        """状態取得の結果から状態を遷移させる。"""
        self._last_snapshot = snap
        if snap.ready:
            new_state = ModalState.READY
        elif snap.visible:
            new_state = ModalState.VISIBLE_NOT_READY
        elif snap.present:
            new_state = ModalState.APPEARING
        else:
            # トリガー実行後は DOM に現れる前でも APPEARING のまま
            new_state = (
                ModalState.APPEARING if self._state is ModalState.APPEARING else ModalState.ABSENT
            )
        if new_state is not self._state:
            logger.debug("状態遷移: %s → %s (%s)", self._state.value, new_state.value, snap.describe())
            self._state = new_state

    async def _not_ready_error(
        self,
        container_selector: str,
        children: list[str],
        exc: ConditionTimeoutError,
        elapsed_ms: float,
    ) -> ModalNotReadyError:
        snap = self._last_snapshot
        if snap is None or not snap.present:
            missing = [container_selector, *children]
        else:
            missing = list(snap.missing_children)
        history = [f"last sample: {snap.describe()}"] if snap is not None else []
        context = await capture_failure_context(
            self._browser,
            f"{container_selector} ready",
            elapsed_ms=elapsed_ms,
            attempt_history=history,
            missing_selectors=missing,
        )
        logger.error(
            "'%s' が %.0fms 以内に準備完了になりませんでした（未検出: %s）",
            container_selector, exc.timeout_ms, ", ".join(missing) or "なし",
        )
        return ModalNotReadyError(
            exc.description,
            exc.timeout_ms,
            last_error=exc.last_error,
            failure_context=context,
        )


# ---------------------------------------------------------------------------
# DOM 件数の変化待機
# ---------------------------------------------------------------------------

async def wait_for_count_change(
    browser: BrowserCapability,
    selector: str,
    previous_count: int,
    timeout_ms: int,
    *,
    waiter: Optional[ConditionWaiter] = None,
    deadline: Optional[Deadline] = None,
) -> int:
    """selector に一致する要素数が previous_count から変化するまで待機する。

    カートからの削除等、ページ遷移を伴わない DOM 更新の反映待ちに使用する。

    Returns:
        変化後の要素数

    Raises:
        ConditionTimeoutError: 制限時間内に要素数が変化しなかった場合
    """
    waiter = waiter or ConditionWaiter(poll_interval_ms=DEFAULT_COUNT_POLL_INTERVAL_MS)
    current = previous_count

    async def _changed() -> bool:
        nonlocal current
        current = len(await browser.query_selector_all(selector))
        return current != previous_count

    await waiter.wait_until(
        _changed,
        timeout_ms,
        description=f"count of {selector} != {previous_count}",
        deadline=deadline,
    )
    logger.debug("'%s' の要素数が %d → %d に変化しました", selector, previous_count, current)
    return current
