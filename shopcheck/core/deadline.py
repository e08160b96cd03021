"""
Deadline — 入れ子の待機で共有する全体制限時間

個々の待機（条件待機・WaitStep・リトライループ）はそれぞれ固有の
タイムアウトを持つが、呼び出し側が全体の予算を渡した場合は
残り時間でそれらを切り詰める。
"""

from __future__ import annotations

import time
from typing import Callable, Optional

Clock = Callable[[], float]
"""単調増加する秒数を返す時計関数の型。"""


class Deadline:
    """全体の期限を表す。

    使用例::

        deadline = Deadline(30_000)
        await engine.run(steps, deadline=deadline)
        await executor.perform(primary, fallbacks, policy, deadline=deadline)
    """

    def __init__(self, budget_ms: float, clock: Clock = time.monotonic) -> None:
        """Deadline を初期化する。

        Args:
            budget_ms: 全体の予算（ミリ秒）
            clock: 単調増加する秒数を返す時計関数
        """
        if budget_ms < 0:
            raise ValueError(f"budget_ms は 0 以上を指定してください: {budget_ms}")
        self._clock = clock
        self._budget_ms = float(budget_ms)
        self._started = clock()

    @property
    def budget_ms(self) -> float:
        return self._budget_ms

    def elapsed_ms(self) -> float:
        return (self._clock() - self._started) * 1000

    def remaining_ms(self) -> float:
        return max(0.0, self._budget_ms - self.elapsed_ms())

    @property
    def expired(self) -> bool:
        return self.remaining_ms() <= 0

    def clip(self, timeout_ms: float) -> float:
        """timeout_ms を残り時間で切り詰めた値を返す。"""
        return min(float(timeout_ms), self.remaining_ms())

    def __repr__(self) -> str:
        return f"Deadline(budget_ms={self._budget_ms:.0f}, remaining_ms={self.remaining_ms():.0f})"


def effective_timeout(timeout_ms: float, deadline: Optional[Deadline]) -> float:
    """deadline があれば残り時間で切り詰めたタイムアウトを返す。"""
    if deadline is None:
        return float(timeout_ms)
    return deadline.clip(timeout_ms)
