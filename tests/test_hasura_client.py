from __future__ import annotations

import pytest
import requests

import src.db.hasura_client as hasura_client
from src.db.hasura_client import HasuraClient, HasuraConfig, HasuraError


class _Resp:
    def __init__(self, status_code: int, payload=None, text: str = "") -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        return self._payload


class _Session:
    def __init__(self, *responses) -> None:
        self.headers: dict[str, str] = {}
        self.responses = list(responses)
        self.posts: list[dict] = []

    def post(self, url, *, json, timeout):
        self.posts.append({"url": url, "json": json, "timeout": timeout})
        r = self.responses.pop(0)
        if isinstance(r, Exception):
            raise r
        return r


@pytest.fixture(autouse=True)
def _no_sleep(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(hasura_client.time, "sleep", lambda _s: None)


def _client(*responses) -> tuple[HasuraClient, _Session]:
    session = _Session(*responses)
    cfg = HasuraConfig(base_url="http://hasura:8080/", admin_secret="s3cret")
    return HasuraClient(cfg, session=session), session  # type: ignore[arg-type]


def test_run_sql_posts_to_v2_query_with_admin_secret() -> None:
    client, session = _client(_Resp(200, {"result_type": "CommandOk"}))
    assert client.run_sql("SELECT 1;", read_only=True) == {"result_type": "CommandOk"}
    post = session.posts[0]
    assert post["url"] == "http://hasura:8080/v2/query"
    assert post["json"]["args"] == {"source": "default", "sql": "SELECT 1;", "read_only": True}
    assert session.headers["x-hasura-admin-secret"] == "s3cret"


def test_conflict_and_connection_errors_are_retried() -> None:
    client, session = _client(
        requests.ConnectionError("refused"),
        _Resp(409, text="serialization failure"),
        _Resp(200, {"result": [["n"], ["1"]]}),
    )
    assert client.select("SELECT 1 AS n;") == [{"n": "1"}]
    assert len(session.posts) == 3


def test_client_error_is_raised_with_status() -> None:
    client, _session = _client(_Resp(400, text="syntax error"))
    with pytest.raises(HasuraError) as ei:
        client.run_sql("SELEC 1;")
    assert ei.value.status_code == 400


def test_retry_budget_is_bounded() -> None:
    client, _session = _client(_Resp(503), _Resp(503), _Resp(503))
    with pytest.raises(HasuraError) as ei:
        client.run_sql("SELECT 1;")
    assert ei.value.status_code == 503


def test_config_from_env_requires_url_and_secret(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("HASURA_BASE_URL", raising=False)
    with pytest.raises(RuntimeError):
        HasuraConfig.from_env()
    monkeypatch.setenv("HASURA_BASE_URL", "http://h/")
    monkeypatch.setenv("HASURA_GRAPHQL_ADMIN_SECRET", "x")
    cfg = HasuraConfig.from_env()
    assert cfg.base_url == "http://h"
    assert cfg.source_name == "default"
