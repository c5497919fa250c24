from __future__ import annotations

import pytest

from src.builder import logo


class _FakeResponse:
    headers = {"content-type": "image/png"}
    content = b"\x89PNG\r\n\x1a\n"

    def raise_for_status(self) -> None:
        return None


class _FakeSession:
    opened: list[_FakeSession] = []

    def __init__(self) -> None:
        self.closed = False
        self.urls: list[str] = []
        _FakeSession.opened.append(self)

    def __enter__(self) -> _FakeSession:
        return self

    def __exit__(self, *exc) -> None:
        self.closed = True

    def get(self, url: str, timeout: float) -> _FakeResponse:
        self.urls.append(url)
        return _FakeResponse()


@pytest.fixture(autouse=True)
def _fake_requests(monkeypatch: pytest.MonkeyPatch) -> None:
    _FakeSession.opened = []
    monkeypatch.setattr(logo.requests, "Session", _FakeSession)


def test_fetch_logo_closes_its_own_session() -> None:
    assert logo.fetch_logo("https://cdn.example.com/logo.png") == _FakeResponse.content
    (session,) = _FakeSession.opened
    assert session.closed
    assert session.urls == ["https://cdn.example.com/logo.png"]


def test_fetch_logo_leaves_injected_session_open() -> None:
    session = _FakeSession()
    logo.fetch_logo("https://cdn.example.com/logo.png", session=session)
    assert not session.closed
    assert len(_FakeSession.opened) == 1
