"""
設定 — セレクタ・タイムアウト・リトライ設定の読み込み

YAML 設定ファイルと環境変数から Settings を生成する。
設定ファイル > デフォルト値、環境変数 > 設定ファイル の優先順位で適用される。
生成した Settings は各コンポーネントのコンストラクタに明示的に渡す
（グローバルな設定シングルトンは持たない）。

設定ファイル:
  settings.yaml              : ベース設定
  settings.<SHOPCHECK_ENV>.yaml : 環境別の上書き（任意、ベースと同じディレクトリ）

環境変数一覧:
  SHOPCHECK_ENV                  : 環境名（上書きファイルの選択に使用）
  SHOPCHECK_BASE_URL             : テスト対象サイトの URL
  SHOPCHECK_HEADED               : ブラウザ表示モード（true/false）
  SHOPCHECK_TIMEOUT_DEFAULT      : 既定タイムアウト（ミリ秒）
  SHOPCHECK_TIMEOUT_SHORT        : 短いタイムアウト（ミリ秒）
  SHOPCHECK_TIMEOUT_NETWORK_IDLE : ネットワークアイドル待機（ミリ秒）
  SHOPCHECK_RETRY_MAX_ATTEMPTS   : 各戦略の最大試行回数
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# 環境変数キー定数
# ---------------------------------------------------------------------------

_ENV_NAME = "SHOPCHECK_ENV"
_ENV_BASE_URL = "SHOPCHECK_BASE_URL"
_ENV_HEADED = "SHOPCHECK_HEADED"
_ENV_TIMEOUT_DEFAULT = "SHOPCHECK_TIMEOUT_DEFAULT"
_ENV_TIMEOUT_SHORT = "SHOPCHECK_TIMEOUT_SHORT"
_ENV_TIMEOUT_NETWORK_IDLE = "SHOPCHECK_TIMEOUT_NETWORK_IDLE"
_ENV_RETRY_MAX_ATTEMPTS = "SHOPCHECK_RETRY_MAX_ATTEMPTS"


# ---------------------------------------------------------------------------
# 設定モデル
# ---------------------------------------------------------------------------

class TimeoutSettings(BaseModel):
    """タイムアウト設定（全てミリ秒）。"""

    default: int = Field(30_000, ge=0)
    short: int = Field(5_000, ge=0)
    medium: int = Field(15_000, ge=0)
    long: int = Field(60_000, ge=0)
    network_idle: int = Field(10_000, ge=0)
    element_wait: int = Field(5_000, ge=0)


class RetrySettings(BaseModel):
    """リトライ設定。"""

    max_attempts: int = Field(3, ge=1)
    delay_ms: int = Field(1_000, ge=0)
    backoff_multiplier: float = Field(2.0, ge=1.0)


class _SelectorGroup(BaseModel):
    """セレクタ文字列のグループ。空文字列は設定ミスとして拒否する。"""

    @field_validator("*")
    @classmethod
    def _not_empty(cls, value: Any) -> Any:
        values = value if isinstance(value, list) else [value]
        if any(isinstance(v, str) and not v.strip() for v in values):
            raise ValueError("セレクタに空文字列は指定できません")
        return value


class CookieConsentSelectors(_SelectorGroup):
    container: str = ".fc-consent-root"
    accept_button: str = ".fc-button.fc-cta-consent"


class CartModalSelectors(_SelectorGroup):
    container: str = "#cartModal"
    view_cart_button: str = "#cartModal a[href='/view_cart']"
    continue_shopping_button: str = "#cartModal .close-modal"
    required_children: list[str] = Field(
        default_factory=lambda: [".modal-content", ".modal-body", ".close-modal"]
    )


class ProductsSelectors(_SelectorGroup):
    search_input: str = "#search_product"
    search_button: str = "#submit_search"
    product_items: str = ".product-image-wrapper"
    add_to_cart_buttons: str = "a[data-product-id].add-to-cart"


class CartPageSelectors(_SelectorGroup):
    container: str = "#cart_info_table"
    cart_items: str = ".cart_info tbody tr"
    remove_buttons: str = ".cart_quantity_delete"
    empty_cart_message: str = "#empty_cart"


class SelectorSettings(BaseModel):
    """論理名ごとのセレクタ設定。"""

    cookie_consent: CookieConsentSelectors = Field(default_factory=CookieConsentSelectors)
    cart_modal: CartModalSelectors = Field(default_factory=CartModalSelectors)
    products: ProductsSelectors = Field(default_factory=ProductsSelectors)
    cart_page: CartPageSelectors = Field(default_factory=CartPageSelectors)


class Settings(BaseModel):
    """shopcheck 全体の設定。

    Attributes:
        base_url: テスト対象サイトの URL
        headed: ブラウザ表示モード
        fallback_delay_ms: 段階的待機の最終ステップで使う固定遅延
        timeouts: タイムアウト設定
        retry: リトライ設定
        selectors: セレクタ設定
    """

    base_url: str = "https://automationexercise.com"
    headed: bool = False
    fallback_delay_ms: int = Field(2_000, ge=0)
    timeouts: TimeoutSettings = Field(default_factory=TimeoutSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    selectors: SelectorSettings = Field(default_factory=SelectorSettings)

    @field_validator("base_url")
    @classmethod
    def _base_url_not_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("base_url に空文字列は指定できません")
        return value.rstrip("/")


# ---------------------------------------------------------------------------
# 読み込み
# ---------------------------------------------------------------------------

def load_settings(
    path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """設定ファイルと環境変数から Settings を生成する。

    Args:
        path: ベース設定ファイルのパス（省略時はデフォルト値から開始）
        environ: 環境変数（省略時は os.environ）

    Returns:
        読み込んだ設定

    Raises:
        FileNotFoundError: path が存在しない場合
        ValueError: YAML 構文エラーまたはスキーマ検証エラーの場合
    """
    env = os.environ if environ is None else environ
    data: dict[str, Any] = {}

    if path is not None:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"設定ファイルが見つかりません: {path}")
        data = _read_yaml(path)

        # 環境別の上書きファイル
        env_name = env.get(_ENV_NAME)
        if env_name:
            overlay = path.with_name(f"{path.stem}.{env_name}{path.suffix}")
            if overlay.exists():
                data = _deep_merge(data, _read_yaml(overlay))
                logger.info("環境別設定を適用しました: %s", overlay)

    try:
        settings = Settings(**data)
    except ValidationError as e:
        raise ValueError(f"設定の検証エラー: {e}") from e

    settings = apply_env_overrides(settings, env)
    logger.info("設定を読み込みました: base_url=%s", settings.base_url)
    return settings


def apply_env_overrides(settings: Settings, environ: Mapping[str, str]) -> Settings:
    """環境変数で Settings を上書きする。

    不正な値は警告を出して無視する。

    Args:
        settings: ベースとなる設定
        environ: 環境変数

    Returns:
        上書き後の設定（新しいインスタンス）
    """
    settings = settings.model_copy(deep=True)

    base_url = environ.get(_ENV_BASE_URL, "").strip()
    if base_url:
        settings.base_url = base_url.rstrip("/")
    elif _ENV_BASE_URL in environ:
        logger.warning("%s に空文字列は指定できません。無視します", _ENV_BASE_URL)

    if _ENV_HEADED in environ:
        settings.headed = _parse_bool(environ[_ENV_HEADED])

    int_overrides = (
        (_ENV_TIMEOUT_DEFAULT, settings.timeouts, "default", 0),
        (_ENV_TIMEOUT_SHORT, settings.timeouts, "short", 0),
        (_ENV_TIMEOUT_NETWORK_IDLE, settings.timeouts, "network_idle", 0),
        (_ENV_RETRY_MAX_ATTEMPTS, settings.retry, "max_attempts", 1),
    )
    for key, target, attr, minimum in int_overrides:
        if key not in environ:
            continue
        try:
            value = int(environ[key])
        except ValueError:
            logger.warning("%s の値が不正です: %s", key, environ[key])
            continue
        if value < minimum:
            logger.warning("%s は %d 以上を指定してください: %s", key, minimum, value)
            continue
        setattr(target, attr, value)

    return settings


# ---------------------------------------------------------------------------
# ヘルパー関数
# ---------------------------------------------------------------------------

def _parse_bool(value: str) -> bool:
    """文字列を bool に変換する（"true", "1", "yes" → True）。"""
    return value.lower() in ("true", "1", "yes")


def _read_yaml(path: Path) -> dict[str, Any]:
    """YAML ファイルを通常の dict として読み込む。"""
    yaml = YAML(typ="safe")
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.load(f)
    except YAMLError as e:
        line_info = ""
        mark = getattr(e, "problem_mark", None)
        if mark is not None:
            line_info = f" (行 {mark.line + 1}, 列 {mark.column + 1})"
        raise ValueError(f"YAML 構文エラー{line_info}: {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"設定ファイルのトップレベルはマッピングである必要があります: {path}")
    return data


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """override の値で base を再帰的に上書きした新しい dict を返す。"""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged
