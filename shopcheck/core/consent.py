"""
Cookie 同意ダイアログの処理

同意ダイアログはセッションや地域によって表示されないことがあるため、
「表示されなかった」ことは正常系として扱う。一方でクリック失敗などの
想定外のエラーは ERROR として結果に保持し、呼び出し側が判別できるようにする。
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from .deadline import Deadline, effective_timeout
from .errors import is_timeout_error

if TYPE_CHECKING:
    from ..browser import BrowserCapability
    from ..config import CookieConsentSelectors

logger = logging.getLogger(__name__)


class ConsentStatus(enum.Enum):
    """同意ダイアログ処理の結果。"""

    DISMISSED = "dismissed"
    NOT_PRESENT = "not_present"
    ERROR = "error"


@dataclass
class ConsentOutcome:
    """dismiss_consent の結果。

    Attributes:
        status: 処理結果
        error: status が ERROR の場合の例外
    """

    status: ConsentStatus
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.status is not ConsentStatus.ERROR


async def dismiss_consent(
    browser: BrowserCapability,
    selectors: CookieConsentSelectors,
    timeout_ms: int = 5_000,
    *,
    deadline: Optional[Deadline] = None,
) -> ConsentOutcome:
    """同意ボタンを待機してクリックし、ダイアログが閉じるまで待機する。

    Args:
        browser: ブラウザ機能
        selectors: 同意ダイアログのセレクタ
        timeout_ms: ボタン出現・ダイアログ消失それぞれの制限時間（ミリ秒）
        deadline: 全体の期限（各待機の制限時間を残り時間で切り詰める）

    Returns:
        ボタンが現れなければ NOT_PRESENT、閉じられれば DISMISSED、
        それ以外の失敗は ERROR（例外を保持）
    """
    def _budget() -> float:
        # Playwright は timeout=0 を無制限と解釈する
        return max(1.0, effective_timeout(timeout_ms, deadline))

    if effective_timeout(timeout_ms, deadline) <= 0:
        logger.debug("期限切れのため同意ダイアログの確認をスキップしました")
        return ConsentOutcome(ConsentStatus.NOT_PRESENT)

    try:
        await browser.wait_for_selector(
            selectors.accept_button, state="visible", timeout_ms=_budget()
        )
    except Exception as exc:
        if is_timeout_error(exc):
            logger.debug("同意ダイアログは表示されませんでした")
            return ConsentOutcome(ConsentStatus.NOT_PRESENT)
        logger.warning("同意ボタンの待機中にエラー: %s", exc)
        return ConsentOutcome(ConsentStatus.ERROR, exc)

    try:
        await browser.click(selectors.accept_button, timeout_ms=_budget())
        await browser.wait_for_selector(
            selectors.container, state="hidden", timeout_ms=_budget()
        )
    except Exception as exc:
        logger.warning("同意ダイアログを閉じられませんでした: %s", exc)
        return ConsentOutcome(ConsentStatus.ERROR, exc)

    logger.info("同意ダイアログを閉じました")
    return ConsentOutcome(ConsentStatus.DISMISSED)
