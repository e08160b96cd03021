# shopcheck: EC サイト E2E テスト向けの待機戦略と耐障害 UI 操作
# ブラウザ機能の抽象化（browser）と設定読み込み（config）、コア機能（core）を提供

__version__ = "0.1.0"
