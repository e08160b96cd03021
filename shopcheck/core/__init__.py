# コアモジュール
# 条件待機、段階的待機エンジン、耐障害アクション実行、準備完了検出、同意ダイアログ処理を提供

from .consent import ConsentOutcome, ConsentStatus, dismiss_consent
from .deadline import Deadline
from .errors import (
    AllStrategiesExhaustedError,
    BrowserError,
    BrowserTimeoutError,
    ClickInterceptedError,
    ConditionTimeoutError,
    FailureContext,
    ModalNotReadyError,
    NavigationError,
    ReadinessProbe,
    ReadinessStatus,
    ShopcheckError,
)
from .executor import ActionOutcome, ActionStrategy, ResilientActionExecutor, RetryPolicy
from .progressive import (
    ProgressiveWaitEngine,
    ProgressiveWaitResult,
    StepStatus,
    WaitStep,
    fixed_delay_step,
    mutation_settle_steps,
    page_ready_steps,
    search_results_steps,
)
from .readiness import ModalReadinessDetector, ModalState, ReadinessCondition, wait_for_count_change
from .waits import ConditionWaiter, wait_for_network_settle

__all__ = [
    "ActionOutcome",
    "ActionStrategy",
    "AllStrategiesExhaustedError",
    "BrowserError",
    "BrowserTimeoutError",
    "ClickInterceptedError",
    "ConditionTimeoutError",
    "ConditionWaiter",
    "ConsentOutcome",
    "ConsentStatus",
    "Deadline",
    "FailureContext",
    "ModalNotReadyError",
    "ModalReadinessDetector",
    "ModalState",
    "NavigationError",
    "ProgressiveWaitEngine",
    "ProgressiveWaitResult",
    "ReadinessCondition",
    "ReadinessProbe",
    "ReadinessStatus",
    "ResilientActionExecutor",
    "RetryPolicy",
    "ShopcheckError",
    "StepStatus",
    "WaitStep",
    "dismiss_consent",
    "fixed_delay_step",
    "mutation_settle_steps",
    "page_ready_steps",
    "search_results_steps",
    "wait_for_count_change",
    "wait_for_network_settle",
]
