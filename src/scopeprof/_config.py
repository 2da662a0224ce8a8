"""Process-wide configuration, read once from the environment at import.

Variables:
- SCOPEPROF_ENABLE: record measurements (default "1"); "0" swaps in the
  no-op recorder for the whole process
- SCOPEPROF_DEEP_HIERARCHY: key scopes by call path instead of name (default "0")
- SCOPEPROF_ROOT_NAME: default application scope name (default "main")
- SCOPEPROF_SINK: default report sink, "stdout", "stderr", "log" or a file path
- SCOPEPROF_LOCK_TIMEOUT: registry lock timeout in seconds (default "1.0")

Design by Contract:
- Invalid values fail fast with AssertionError naming the variable
"""

import os
from collections.abc import Mapping
from dataclasses import dataclass

from beartype import beartype

_TRUE = frozenset({"1", "true", "yes", "on"})
_FALSE = frozenset({"0", "false", "no", "off"})


def _parse_bool(environ: Mapping[str, str], name: str, default: bool) -> bool:
    raw = environ.get(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    assert value in _TRUE or value in _FALSE, (
        f"{name} must be one of {sorted(_TRUE | _FALSE)}, got {raw!r}"
    )
    return value in _TRUE


@dataclass(frozen=True)
class ProfilerConfig:
    """Immutable profiler settings.

    Attributes:
        enabled: Use the recording implementation (False selects the no-op one)
        deep_hierarchy: Identity mode, path-qualified keys when True
        root_name: Default name of the application scope
        sink: Default report destination
        lock_timeout: Registry lock timeout in seconds (MUST be > 0)
    """

    enabled: bool = True
    deep_hierarchy: bool = False
    root_name: str = "main"
    sink: str = "stdout"
    lock_timeout: float = 1.0

    def __post_init__(self) -> None:
        assert self.root_name, "Root scope name must be non-empty"
        assert self.sink, "Report sink must be non-empty"
        assert self.lock_timeout > 0, f"Lock timeout must be positive: {self.lock_timeout}"

    @classmethod
    @beartype
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ProfilerConfig":
        env = os.environ if environ is None else environ

        raw_timeout = env.get("SCOPEPROF_LOCK_TIMEOUT", "1.0")
        try:
            lock_timeout = float(raw_timeout)
        except ValueError:
            raise AssertionError(
                f"SCOPEPROF_LOCK_TIMEOUT must be a number of seconds, got {raw_timeout!r}"
            ) from None

        return cls(
            enabled=_parse_bool(env, "SCOPEPROF_ENABLE", True),
            deep_hierarchy=_parse_bool(env, "SCOPEPROF_DEEP_HIERARCHY", False),
            root_name=env.get("SCOPEPROF_ROOT_NAME", "main"),
            sink=env.get("SCOPEPROF_SINK", "stdout"),
            lock_timeout=lock_timeout,
        )
