"""
テスト共通フィクスチャ

全テストモジュールで共有するモックブラウザと設定を提供する。
実際のブラウザは起動せず、BrowserCapability を AsyncMock で置き換える。
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from shopcheck.config import Settings, TimeoutSettings


# ---------------------------------------------------------------------------
# ヘルパー
# ---------------------------------------------------------------------------

def make_mock_browser(url: str = "https://automationexercise.com/products",
                      title: str = "Automation Exercise - All Products") -> MagicMock:
    """BrowserCapability のモックを生成する。

    全ての非同期操作は AsyncMock（既定で None を返す）で、
    url / title はテスト用の固定値を返す。
    """
    browser = MagicMock()
    browser.url = url
    browser.title = AsyncMock(return_value=title)
    for name in (
        "navigate",
        "query_selector",
        "query_selector_all",
        "click",
        "fill",
        "evaluate",
        "wait_for_selector",
        "wait_for_function",
        "wait_for_response",
        "wait_for_load_state",
        "wait_for_url",
        "scroll_into_view",
    ):
        setattr(browser, name, AsyncMock())
    browser.query_selector_all.return_value = []
    browser.scroll_into_view.return_value = True
    return browser


# ---------------------------------------------------------------------------
# pytest フィクスチャ
# ---------------------------------------------------------------------------

@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """一時ディレクトリを提供する pytest フィクスチャ。"""
    return tmp_path


@pytest.fixture
def mock_browser() -> MagicMock:
    """モックブラウザ。"""
    return make_mock_browser()


@pytest.fixture
def fast_timeouts() -> TimeoutSettings:
    """テスト用の短いタイムアウト設定。"""
    return TimeoutSettings(
        default=500,
        short=100,
        medium=300,
        long=1_000,
        network_idle=100,
        element_wait=100,
    )


@pytest.fixture
def default_settings() -> Settings:
    """デフォルト値の Settings。"""
    return Settings()
