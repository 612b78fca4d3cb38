from __future__ import annotations

import sys
from datetime import datetime
from pathlib import Path

import pytest
from requests.cookies import RequestsCookieJar

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from maimai_record.bootstrap import apply_schema
from maimai_record.config import Credentials, ScheduleConfig, Settings, SiteConfig, StorageConfig
from maimai_record.db import connect_db

FIXTURE_DIR = Path(__file__).resolve().parent / "fixtures"

BASE_URL = "https://maimaidx-eng.com/maimai-mobile/"
RECORD_URL = BASE_URL + "record/"
PLAYER_DATA_URL = BASE_URL + "playerData/"
LOGIN_PAGE_URL = "https://lng-tgk-aime-gw.am-all.net/common_auth/login?site=maimaidxex&redirect_url=https://maimaidx-eng.com/maimai-mobile/"
HOME_URL = BASE_URL + "home/"

DAYTIME = datetime(2026, 1, 23, 13, 0)


def scores_url(diff: int) -> str:
    return f"{BASE_URL}record/musicGenre/search/?genre=99&diff={diff}"


def read_fixture(name: str) -> str:
    return (FIXTURE_DIR / name).read_text(encoding="utf-8")


class FakeResponse:
    """requests.Response のうち SessionManager が参照する属性だけを持つ代替。"""

    def __init__(self, url: str, text: str = "", status_code: int = 200):
        self.url = url
        self.text = text
        self.status_code = status_code
        self.encoding = "utf-8"


class FakeHttp:
    """
    requests.Session の代替。

    routes は (method, url) -> 応答のリスト。応答が複数ある場合は先頭から順に返し、
    最後の1件は以降繰り返し返す。応答には FakeResponse、例外インスタンス、
    または (http, data) を受け取って FakeResponse を返す関数を指定できる。
    """

    def __init__(self, routes=None, logged_in: bool = True):
        self.routes = {}
        for key, value in (routes or {}).items():
            self.routes[key] = list(value) if isinstance(value, list) else [value]
        self.cookies = RequestsCookieJar()
        if logged_in:
            self.cookies.set("userId", "session-token", domain="maimaidx-eng.com", path="/")
        self.calls = []

    def request(self, method, url, data=None, headers=None, timeout=None):
        self.calls.append((method, url))
        queue = self.routes.get((method, url))
        if not queue:
            raise AssertionError(f"unexpected request: {method} {url}")
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return item(self, data)
        return item

    def urls(self, method: str = "GET"):
        return [url for m, url in self.calls if m == method]


def site_routes(player_data_html: str = None) -> dict:
    """ログイン済みの状態で全ページを返すルート定義。"""
    routes = {
        ("GET", RECORD_URL): FakeResponse(RECORD_URL, read_fixture("record.html")),
        ("GET", PLAYER_DATA_URL): FakeResponse(PLAYER_DATA_URL, player_data_html or read_fixture("player_data.html")),
    }
    for diff in range(5):
        routes[("GET", scores_url(diff))] = FakeResponse(scores_url(diff), read_fixture(f"scores_diff{diff}.html"))
    return routes


@pytest.fixture
def make_settings(tmp_path: Path):
    def _make(**site_overrides) -> Settings:
        site = dict(request_interval_seconds=0.5, max_retries=3, retry_base_delay_seconds=2.0)
        site.update(site_overrides)
        return Settings(
            credentials=Credentials(sega_id="player@example.com", password="s3cret-pass"),
            site=SiteConfig(**site),
            storage=StorageConfig(
                sqlite_path=str(tmp_path / "records.sqlite"),
                cookie_path=str(tmp_path / "cookies.json"),
            ),
            schedule=ScheduleConfig(),
        )

    return _make


@pytest.fixture
def settings(make_settings) -> Settings:
    return make_settings()


@pytest.fixture
def con(settings: Settings):
    apply_schema(settings.storage.sqlite_path)
    connection = connect_db(settings.storage.sqlite_path)
    yield connection
    connection.close()
