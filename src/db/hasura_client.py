"""Thin client for Hasura's `run_sql` endpoint, the builder's only DB access path.

Each `run_sql` call runs as a single transaction on the Hasura side, so a
multi-statement payload either fully applies or not at all.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Any

import requests

_log = logging.getLogger(__name__)

# 409 is Hasura's serialization-conflict answer; 502-504 come from the proxy in front of it.
_RETRY_STATUS = frozenset({409, 502, 503, 504})


class HasuraError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class HasuraConfig:
    base_url: str
    admin_secret: str
    source_name: str = "default"
    timeout_s: float = 30.0
    max_attempts: int = 3

    @classmethod
    def from_env(cls) -> HasuraConfig:
        base_url = (os.environ.get("HASURA_BASE_URL") or "").strip()
        secret = (os.environ.get("HASURA_GRAPHQL_ADMIN_SECRET") or "").strip()
        if not base_url:
            raise RuntimeError("HASURA_BASE_URL is not set")
        if not secret:
            raise RuntimeError("HASURA_GRAPHQL_ADMIN_SECRET is not set")
        return cls(
            base_url=base_url.rstrip("/"),
            admin_secret=secret,
            source_name=(os.environ.get("HASURA_SOURCE_NAME") or "").strip() or "default",
        )


def rows_from_result(res: dict[str, Any]) -> list[dict[str, Any]]:
    """Turn a TuplesOk payload (header row + string rows) into dicts.

    Hasura renders SQL NULL as the string "NULL"; those become None.
    """
    rows = res.get("result")
    if not isinstance(rows, list) or len(rows) < 2 or not isinstance(rows[0], list):
        return []
    header = rows[0]
    out: list[dict[str, Any]] = []
    for r in rows[1:]:
        if not isinstance(r, list):
            continue
        out.append(
            {
                col: (None if r[idx] == "NULL" else r[idx])
                for idx, col in enumerate(header)
                if isinstance(col, str) and idx < len(r)
            }
        )
    return out


class HasuraClient:
    def __init__(self, cfg: HasuraConfig, *, session: requests.Session | None = None) -> None:
        self.cfg = cfg
        self._http = session or requests.Session()
        self._http.headers.update(
            {
                "x-hasura-admin-secret": cfg.admin_secret,
                "content-type": "application/json",
            }
        )

    @property
    def query_url(self) -> str:
        return f"{self.cfg.base_url.rstrip('/')}/v2/query"

    def _post(self, payload: dict[str, Any]) -> requests.Response:
        return self._http.post(self.query_url, json=payload, timeout=self.cfg.timeout_s)

    def run_sql(self, sql: str, *, read_only: bool = False) -> dict[str, Any]:
        payload = {
            "type": "run_sql",
            "args": {"source": self.cfg.source_name, "sql": sql, "read_only": read_only},
        }
        attempts = max(1, self.cfg.max_attempts)
        for attempt in range(1, attempts + 1):
            last = attempt == attempts
            try:
                resp = self._post(payload)
            except requests.ConnectionError as exc:
                if last:
                    raise HasuraError(f"run_sql: connection failed: {exc}") from exc
                _log.warning("Hasura unreachable (attempt %d/%d): %s", attempt, attempts, exc)
                time.sleep(0.2 * attempt)
                continue
            if resp.status_code in _RETRY_STATUS and not last:
                _log.info("Hasura answered %s; retrying run_sql", resp.status_code)
                time.sleep(0.2 * attempt)
                continue
            if resp.status_code >= 400:
                raise HasuraError(
                    f"run_sql failed ({resp.status_code}): {resp.text[:2000]}",
                    status_code=resp.status_code,
                )
            return resp.json()
        raise HasuraError("run_sql: retries exhausted")

    def select(self, sql: str) -> list[dict[str, Any]]:
        return rows_from_result(self.run_sql(sql, read_only=True))


def hasura_client_from_env() -> HasuraClient:
    return HasuraClient(HasuraConfig.from_env())
