"""
maimai DX NET の認証済みHTTPセッション管理。

すべての認証付きリクエストは SessionManager を経由する。呼び出し側は Cookie を直接扱わない。

処理方針:
- 起動時に永続化済み Cookie(JSON) を読み込み、record ページへの軽量なプローブで
  ログイン状態を確認する
- 未ログイン（ログインページへのリダイレクト、エラーページ、Cookie 無し）の場合は
  SEGA ID ログインを実行し、成功後に Cookie を保存する
- 取得中にセッション切れを検知した場合は同一サイクル内で1回だけ再ログインして再取得する
- タイムアウト・接続失敗・5xx は NetworkError としてリトライし、上限到達で送出する
- 認証失敗時も Cookie ファイルは削除しない

例外方針:
- requests 由来の例外は ScrapeError 系に変換して上位へ伝播する。
"""

from __future__ import annotations

import json
import logging
import os
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional
from urllib.parse import urljoin, urlparse

import requests
from bs4 import BeautifulSoup

from maimai_record.config import Settings
from maimai_record.errors import (
    AuthenticationError,
    MaintenanceWindowError,
    NetworkError,
    ScrapeError,
    SessionExpiredError,
)
from maimai_record.maintenance import is_maintenance_window

logger = logging.getLogger(__name__)

LOGIN_POST_PATH = "/common_auth/login/sid/"

_USER_AGENT = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) "
    "AppleWebKit/605.1.15 (KHTML, like Gecko) "
    "Version/17.0 Mobile/15E148 Safari/604.1"
)

_EXPIRED_BODY_MARKERS = (
    "Please login again.",
    "ERROR CODE",
    "title_error.png",
    "The connection time has been expired",
)


def build_http_session() -> requests.Session:
    """スマートフォンブラウザ相当のヘッダーを持つ requests.Session を返す。"""
    session = requests.Session()
    session.headers.update(
        {
            "User-Agent": _USER_AGENT,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.9,ja;q=0.8",
        }
    )
    return session


def looks_like_login_or_expired(final_url: str, body: str) -> bool:
    """
    レスポンスがログイン要求・セッション切れ・エラーページかどうかを判定する。

    Args:
        final_url: リダイレクト後の最終URL。
        body: レスポンス本文。

    Returns:
        ログインが必要と判断できる場合 True。
    """
    parsed = urlparse(final_url or "")
    if parsed.path.startswith("/maimai-mobile/error/"):
        return True
    if "/common_auth/login" in final_url:
        return True
    if (parsed.hostname or "").endswith("am-all.net") and "/common_auth/" in final_url:
        return True
    return any(marker in (body or "") for marker in _EXPIRED_BODY_MARKERS)


class SessionManager:
    """
    認証済みセッションを保証するクライアント。

    Attributes:
        http: 実際に通信を行う requests.Session（テストでは差し替え可能）。
        cookie_path: Cookie の保存先。
    """

    def __init__(
        self,
        settings: Settings,
        http: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.settings = settings
        self.http = http if http is not None else build_http_session()
        self.cookie_path = Path(settings.storage.cookie_path)
        self._sleep = sleep
        self._clock = clock
        self._cookies_loaded = False

    # ------------------------------------------------------------------
    # URL
    # ------------------------------------------------------------------

    def url(self, path: str) -> str:
        return urljoin(self.settings.site.base_url, path)

    @property
    def record_url(self) -> str:
        return self.url("record/")

    @property
    def player_data_url(self) -> str:
        return self.url("playerData/")

    def scores_url(self, diff: int) -> str:
        """難易度別スコア一覧 (全ジャンル) のURLを返す。"""
        if not 0 <= diff <= 4:
            raise ValueError(f"diff must be 0..4: {diff}")
        return self.url(f"record/musicGenre/search/?genre=99&diff={diff}")

    # ------------------------------------------------------------------
    # Cookie 永続化
    # ------------------------------------------------------------------

    def load_cookies(self) -> int:
        """
        Cookie ファイルを読み込みセッションへ反映する。

        ファイルが無い、または壊れている場合は空のセッションで続行する。

        Returns:
            読み込んだ Cookie の件数。
        """
        self._cookies_loaded = True
        if not self.cookie_path.exists():
            return 0

        try:
            with open(self.cookie_path, "r", encoding="utf-8") as f:
                entries = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Cookieファイルを読み込めないため新しいセッションで続行します: %s (%s)", self.cookie_path, e)
            return 0

        count = 0
        for entry in entries if isinstance(entries, list) else []:
            if not isinstance(entry, dict) or "name" not in entry:
                continue
            self.http.cookies.set(
                entry["name"],
                entry.get("value"),
                domain=entry.get("domain") or "",
                path=entry.get("path") or "/",
                expires=entry.get("expires"),
                secure=bool(entry.get("secure")),
                rest=entry.get("rest") or {},
            )
            count += 1

        logger.debug("Cookieを読み込みました: %d 件", count)
        return count

    def save_cookies(self) -> None:
        """
        現在の Cookie を JSON ファイルへ保存する。

        一時ファイルへ書き込んでから置き換え、所有者のみ読み書き可能にする。
        """
        entries = []
        for cookie in self.http.cookies:
            entries.append(
                {
                    "name": cookie.name,
                    "value": cookie.value,
                    "domain": cookie.domain,
                    "path": cookie.path,
                    "expires": cookie.expires,
                    "secure": bool(cookie.secure),
                    "rest": dict(getattr(cookie, "_rest", {}) or {}),
                }
            )

        self.cookie_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.cookie_path.with_name(self.cookie_path.name + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(entries, f)
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, self.cookie_path)

    # ------------------------------------------------------------------
    # 通信
    # ------------------------------------------------------------------

    def _ensure_not_maintenance(self) -> None:
        schedule = self.settings.schedule
        if is_maintenance_window(self._clock(), schedule.maintenance_start_hour, schedule.maintenance_end_hour):
            raise MaintenanceWindowError(
                f"maintenance window ({schedule.maintenance_start_hour:02d}:00-"
                f"{schedule.maintenance_end_hour:02d}:00 local time); skipping request"
            )

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        """
        リトライ付きでリクエストを送信する。

        タイムアウト・接続失敗・5xx は最大 max_retries 回まで指数バックオフで再試行する。

        Raises:
            MaintenanceWindowError: メンテナンス時間帯の場合。
            NetworkError: リトライ上限に達した場合。
            ScrapeError: 4xx など再試行しても回復しない応答の場合。
        """
        self._ensure_not_maintenance()

        site = self.settings.site
        message = ""
        cause: Optional[BaseException] = None

        for attempt in range(site.max_retries):
            try:
                resp = self.http.request(method, url, timeout=site.request_timeout_seconds, **kwargs)
            except (requests.Timeout, requests.ConnectionError) as e:
                message = f"{method} {url} failed: {e}"
                cause = e
            except requests.RequestException as e:
                raise ScrapeError(f"{method} {url} failed: {e}") from e
            else:
                if resp.status_code == 503:
                    message = f"site unavailable (503). maimai DX NET may be under maintenance. url={resp.url}"
                    cause = None
                elif resp.status_code >= 500:
                    message = f"server error: {resp.status_code} url={resp.url}"
                    cause = None
                elif resp.status_code >= 400:
                    raise ScrapeError(f"non-success status: {resp.status_code} url={resp.url}")
                else:
                    if resp.encoding is None or resp.encoding.upper() == "ISO-8859-1":
                        resp.encoding = "utf-8"
                    return resp

            if attempt < site.max_retries - 1:
                delay = site.retry_base_delay_seconds * (2 ** attempt)
                logger.warning(
                    "[Retry %d/%d] %s. Retrying in %.1fs...",
                    attempt + 1,
                    site.max_retries,
                    message,
                    delay,
                )
                self._sleep(delay)

        raise NetworkError(message) from cause

    def check_logged_in(self) -> bool:
        """
        record ページへのプローブでログイン状態を確認する。

        Cookie が1件も無い場合は通信せずに False を返す。
        """
        if len(self.http.cookies) == 0:
            return False
        resp = self._request("GET", self.record_url)
        return not looks_like_login_or_expired(resp.url, resp.text)

    def login(self) -> None:
        """
        SEGA ID でログインする。

        ログインページの sidForm から hidden 項目を取り出し、認証情報と合わせて POST する。
        ログインページが表示されずに会員ページへ到達した場合はログイン済みとみなす。

        Raises:
            AuthenticationError: 認証が拒否された、または想定外の応答だった場合。
        """
        page = self._request("GET", self.settings.site.base_url)
        soup = BeautifulSoup(page.text, "html.parser")
        form = soup.find("form", id="sidForm")

        if form is None:
            if looks_like_login_or_expired(page.url, page.text):
                raise AuthenticationError(f"unexpected login response. final_url={page.url}")
            logger.info("ログインフォームが表示されなかったためログイン済みとみなします")
            return

        payload: Dict[str, str] = {}
        for hidden in form.find_all("input", attrs={"type": "hidden"}):
            name = hidden.get("name")
            if name:
                payload[name] = hidden.get("value") or ""

        credentials = self.settings.credentials
        payload.update(
            {
                "sid": credentials.sega_id,
                "password": credentials.password,
                "retention": "1",
            }
        )

        post_url = urljoin(page.url, form.get("action") or LOGIN_POST_PATH)
        resp = self._request("POST", post_url, data=payload, headers={"Referer": page.url})

        if looks_like_login_or_expired(resp.url, resp.text):
            raise AuthenticationError(f"login failed or not completed. final_url={resp.url}")

        logger.info("SEGA ID ログインに成功しました")

    def ensure_authenticated(self) -> "SessionManager":
        """
        認証済みセッションを保証し、自身をクライアントとして返す。

        Raises:
            AuthenticationError: ログイン後もログイン状態にならない場合。
            NetworkError: 通信に失敗した場合。
        """
        if not self._cookies_loaded:
            self.load_cookies()

        if self.check_logged_in():
            logger.debug("既存のセッションでログイン済みです")
            return self

        logger.info("ログインが必要なため SEGA ID ログインを実行します")
        self.login()
        if not self.check_logged_in():
            raise AuthenticationError("login attempted but still not authenticated")

        self.save_cookies()
        return self

    def _get_authenticated(self, url: str) -> str:
        resp = self._request("GET", url)
        if looks_like_login_or_expired(resp.url, resp.text):
            raise SessionExpiredError(f"session expired while fetching {url} (final_url={resp.url})")
        self.save_cookies()
        return resp.text

    def fetch_html(self, url: str) -> str:
        """
        認証付きでページを取得し、HTML文字列を返す。

        セッション切れを検知した場合は1回だけ再ログインして再取得する。

        Raises:
            SessionExpiredError: 再ログイン後もセッション切れと判定された場合。
            AuthenticationError: 再ログインが拒否された場合。
            NetworkError: 通信に失敗した場合。
        """
        try:
            return self._get_authenticated(url)
        except SessionExpiredError:
            logger.info("セッション切れを検知したため再ログインします: %s", url)

        self.login()
        return self._get_authenticated(url)
