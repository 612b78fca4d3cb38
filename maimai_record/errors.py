"""
アプリケーション固有の例外定義モジュール。

認証、通信、HTMLパース、SQLite保存などの処理で発生する例外を
分類して扱うために、基底例外および派生例外を定義する。

伝播方針:
- 行単位の ParseError はパーサ内で吸収し、行をスキップする
- サイクル単位の例外は同期オーケストレータで捕捉し、ホストプロセスへは伝播させない
"""


class RecordSyncError(Exception):
    """記録同期システム全体の基底例外。"""


class ConfigError(RecordSyncError):
    """設定ファイルや環境変数が不足・不正な場合の例外。"""


class ScrapeError(RecordSyncError):
    """maimai DX NET からの取得処理に起因する例外。"""


class NetworkError(ScrapeError):
    """タイムアウト・接続失敗・5xx 応答。リトライ対象。"""


class SessionExpiredError(ScrapeError):
    """セッション切れ。同一サイクル内での再ログインで回復可能。"""


class MaintenanceWindowError(ScrapeError):
    """メンテナンス時間帯のためリクエストを送信しなかった場合の例外。"""


class AuthenticationError(RecordSyncError):
    """SEGA ID の認証が拒否された場合の例外。現在のサイクルのみ中断する。"""


class ParseError(RecordSyncError):
    """HTML から必要な情報を取り出せない場合の例外。"""


class StorageError(RecordSyncError):
    """SQLite トランザクションが失敗した場合の例外。ロールバック済みで送出される。"""
