from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env_str(name: str, default: str) -> str:
    return (os.environ.get(name) or default).strip() or default


def _env_bool(name: str, *, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in ("1", "true", "yes", "on"):
        return True
    if v in ("0", "false", "no", "off"):
        return False
    return default


def _env_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_port_range(name: str, default: tuple[int, ...]) -> tuple[int, ...]:
    """Parse "3000-3010" or "3000,3001,3005" into a port tuple."""
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        if "-" in raw:
            lo, hi = (int(p) for p in raw.split("-", 1))
            ports = tuple(range(lo, hi + 1))
        else:
            ports = tuple(int(p) for p in raw.split(",") if p.strip())
    except ValueError:
        return default
    return ports or default


DEFAULT_PREVIEW_PORTS: tuple[int, ...] = tuple(range(3000, 3011))


@dataclass(frozen=True)
class BuilderSettings:
    """Timing and path knobs shared by the build orchestrators.

    Every orchestrator takes one of these explicitly so tests can shrink the
    deadlines to a few fake-clock ticks.
    """

    sandbox_root: str = "/home/user/projects"
    seed_dir: str = "/home/user/project/seed/frontend"
    seed_enabled: bool = True

    poll_interval_s: float = 2.0
    generate_deadline_s: float = 600.0
    install_deadline_s: float = 300.0
    install_attempts: int = 2
    toolkit_timeout_s: float = 180.0
    command_timeout_s: float = 300.0
    short_command_timeout_s: float = 15.0
    snapshot_retry_delay_s: float = 3.0

    preview_ports: tuple[int, ...] = field(default=DEFAULT_PREVIEW_PORTS)
    port_probe_attempts: int = 10
    port_probe_interval_s: float = 2.0

    lock_wait_s: float = 30.0
    log_tail_chars: int = 12_000
    sandbox_keepalive_s: int = 1800
    handle_cache_ttl_s: float = 300.0

    @classmethod
    def from_env(cls) -> BuilderSettings:
        d = cls()
        return cls(
            sandbox_root=_env_str("BUILDER_SANDBOX_ROOT", d.sandbox_root).rstrip("/"),
            seed_dir=_env_str("BUILDER_SEED_DIR", d.seed_dir).rstrip("/"),
            seed_enabled=_env_bool("BUILDER_SEED_ENABLED", default=d.seed_enabled),
            poll_interval_s=_env_float("BUILDER_POLL_INTERVAL_S", d.poll_interval_s),
            generate_deadline_s=_env_float(
                "BUILDER_GENERATE_DEADLINE_S", d.generate_deadline_s
            ),
            install_deadline_s=_env_float(
                "BUILDER_INSTALL_DEADLINE_S", d.install_deadline_s
            ),
            install_attempts=max(1, _env_int("BUILDER_INSTALL_ATTEMPTS", d.install_attempts)),
            toolkit_timeout_s=_env_float("BUILDER_TOOLKIT_TIMEOUT_S", d.toolkit_timeout_s),
            command_timeout_s=_env_float("BUILDER_COMMAND_TIMEOUT_S", d.command_timeout_s),
            short_command_timeout_s=_env_float(
                "BUILDER_SHORT_COMMAND_TIMEOUT_S", d.short_command_timeout_s
            ),
            snapshot_retry_delay_s=_env_float(
                "BUILDER_SNAPSHOT_RETRY_DELAY_S", d.snapshot_retry_delay_s
            ),
            preview_ports=_env_port_range("BUILDER_PREVIEW_PORTS", d.preview_ports),
            port_probe_attempts=max(
                1, _env_int("BUILDER_PORT_PROBE_ATTEMPTS", d.port_probe_attempts)
            ),
            port_probe_interval_s=_env_float(
                "BUILDER_PORT_PROBE_INTERVAL_S", d.port_probe_interval_s
            ),
            lock_wait_s=_env_float("BUILDER_LOCK_WAIT_S", d.lock_wait_s),
            log_tail_chars=_env_int("BUILDER_LOG_TAIL_CHARS", d.log_tail_chars),
            sandbox_keepalive_s=_env_int("E2B_SANDBOX_TIMEOUT_S", d.sandbox_keepalive_s),
            handle_cache_ttl_s=_env_float("BUILDER_HANDLE_CACHE_TTL_S", d.handle_cache_ttl_s),
        )


def e2b_api_key() -> str:
    return (os.environ.get("E2B_API_KEY") or "").strip()


def e2b_template() -> str | None:
    return (os.environ.get("E2B_BUILDER_TEMPLATE") or "").strip() or None


def handle_cache_enabled() -> bool:
    return _env_bool("BUILDER_HANDLE_CACHE", default=False)
