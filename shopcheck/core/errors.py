"""
エラー定義 — 待機・リトライ・準備完了検出の例外階層

待機戦略と耐障害アクション実行で使用する例外と、終端エラーに添付する
診断情報（FailureContext）を定義する。

例外階層:
  ShopcheckError
    ├─ ConditionTimeoutError（TimeoutError も継承）
    │    └─ ModalNotReadyError
    ├─ AllStrategiesExhaustedError
    └─ BrowserError
         ├─ BrowserTimeoutError（TimeoutError も継承）
         │    └─ ClickInterceptedError
         └─ NavigationError

準備完了判定は例外の握りつぶしではなく ReadinessStatus（3値）で返す。
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from typing import Optional

from playwright.async_api import TimeoutError as PlaywrightTimeoutError


# ---------------------------------------------------------------------------
# 診断情報
# ---------------------------------------------------------------------------

@dataclass
class ErrorInfo:
    """例外の型名とメッセージ。

    Attributes:
        type: 例外クラス名
        message: 例外メッセージ
    """

    type: str
    message: str

    @classmethod
    def from_exception(cls, exc: BaseException) -> ErrorInfo:
        return cls(type=type(exc).__name__, message=str(exc))

    def __str__(self) -> str:
        return f"{self.type}: {self.message}"


@dataclass
class FailureContext:
    """終端エラー発生時のページ状態スナップショット。

    失敗時にのみ生成され、送出する例外の failure_context 属性に添付される。

    Attributes:
        selector_or_condition: 失敗したセレクタまたは条件の説明
        page_url: 失敗時のページ URL
        page_title: 失敗時のページタイトル
        elapsed_ms: 開始から失敗までの経過時間（ミリ秒）
        attempt_history: 試行履歴（"strategy#attempt: error" 形式）
        missing_selectors: 最後の判定時点で存在しなかった子要素セレクタ
    """

    selector_or_condition: str
    page_url: str = ""
    page_title: str = ""
    elapsed_ms: float = 0.0
    attempt_history: list[str] = field(default_factory=list)
    missing_selectors: list[str] = field(default_factory=list)

    def describe(self) -> str:
        """エラーメッセージに埋め込む複数行の説明を返す。"""
        lines = [
            f"  対象: {self.selector_or_condition}",
            f"  URL: {self.page_url or '(不明)'}",
            f"  タイトル: {self.page_title or '(不明)'}",
            f"  経過時間: {self.elapsed_ms:.0f}ms",
        ]
        if self.missing_selectors:
            lines.append(f"  未検出の子要素: {', '.join(self.missing_selectors)}")
        if self.attempt_history:
            lines.append("  試行履歴:")
            lines.extend(f"    - {entry}" for entry in self.attempt_history)
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# 例外クラス
# ---------------------------------------------------------------------------

class ShopcheckError(Exception):
    """shopcheck の全例外の基底クラス。

    Attributes:
        failure_context: 終端エラーの場合に添付される診断情報
    """

    def __init__(
        self, message: str, *, failure_context: Optional[FailureContext] = None
    ) -> None:
        super().__init__(message)
        self.message = message
        self.failure_context = failure_context

    def __str__(self) -> str:
        if self.failure_context is None:
            return self.message
        return f"{self.message}\n{self.failure_context.describe()}"


class ConditionTimeoutError(ShopcheckError, TimeoutError):
    """条件が制限時間内に真にならなかった場合のエラー。

    呼び出し側で回復可能（次の WaitStep やフォールバックに進む）。

    Attributes:
        description: 待機していた条件の説明
        timeout_ms: 待機した制限時間（ミリ秒）
        last_error: 最後の条件評価で発生した例外（なければ None）
    """

    def __init__(
        self,
        description: str,
        timeout_ms: float,
        *,
        last_error: Optional[BaseException] = None,
        failure_context: Optional[FailureContext] = None,
    ) -> None:
        message = f"条件 '{description}' が {timeout_ms:.0f}ms 以内に満たされませんでした"
        if last_error is not None:
            message += f"（最後の評価エラー: {ErrorInfo.from_exception(last_error)}）"
        super().__init__(message, failure_context=failure_context)
        self.description = description
        self.timeout_ms = timeout_ms
        self.last_error = last_error


class ModalNotReadyError(ConditionTimeoutError):
    """モーダル等の一時的 UI が制限時間内に準備完了にならなかった場合のエラー。"""


class AllStrategiesExhaustedError(ShopcheckError):
    """プライマリ操作と全フォールバックが失敗した場合の終端エラー。

    Attributes:
        description: 実行しようとしたアクションの説明
        errors: (戦略名, 試行番号, 例外) のリスト（発生順）
    """

    def __init__(
        self,
        description: str,
        errors: list[tuple[str, int, BaseException]],
        *,
        failure_context: Optional[FailureContext] = None,
    ) -> None:
        strategies = list(dict.fromkeys(name for name, _, _ in errors))
        message = (
            f"アクション '{description}' の全戦略が失敗しました"
            f"（{len(errors)} 回試行, 戦略: {', '.join(strategies) or 'なし'}）"
        )
        details = "\n".join(
            f"  [{name}#{attempt}] {ErrorInfo.from_exception(exc)}"
            for name, attempt, exc in errors
        )
        if details:
            message = f"{message}\n{details}"
        super().__init__(message, failure_context=failure_context)
        self.description = description
        self.errors = errors


class BrowserError(ShopcheckError):
    """ブラウザ操作で発生したエラーの基底クラス。"""


class BrowserTimeoutError(BrowserError, TimeoutError):
    """ブラウザ操作がタイムアウトした場合のエラー。"""


class ClickInterceptedError(BrowserTimeoutError):
    """クリックが他の要素（オーバーレイ等）に遮られた場合のエラー。

    スクリプト経由クリックのフォールバックで回復することを想定している。
    """


class NavigationError(BrowserError):
    """ページ遷移に失敗した場合のエラー。"""


# ---------------------------------------------------------------------------
# 3値の準備完了判定
# ---------------------------------------------------------------------------

class ReadinessStatus(enum.Enum):
    """準備完了判定の結果。

    NOT_READY（まだ）と ERROR（想定外の失敗）を区別する。
    """

    READY = "ready"
    NOT_READY = "not_ready"
    ERROR = "error"


@dataclass
class ReadinessProbe:
    """1回の準備完了判定の結果。

    Attributes:
        status: 判定結果
        detail: 補足情報（未検出セレクタ等）
        error: status が ERROR の場合の例外
    """

    status: ReadinessStatus
    detail: str = ""
    error: Optional[BaseException] = None

    @property
    def ready(self) -> bool:
        return self.status is ReadinessStatus.READY


# ---------------------------------------------------------------------------
# ヘルパー
# ---------------------------------------------------------------------------

def is_timeout_error(exc: BaseException) -> bool:
    """例外がタイムアウト系かどうかを判定する。

    自前の ConditionTimeoutError / BrowserTimeoutError、組み込みの
    TimeoutError（asyncio.TimeoutError を含む）、Playwright の TimeoutError を
    タイムアウトとみなす。
    """
    return isinstance(
        exc, (TimeoutError, asyncio.TimeoutError, PlaywrightTimeoutError)
    )
