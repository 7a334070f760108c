"""
Harness configuration.

Settings are layered, lowest precedence first: built-in defaults, an
optional YAML config file, environment variables, then CLI flags (applied by
the caller with ``dataclasses.replace``).

Example config file::

    backends:
      - name: interpreter
        command: ["ruchy", "run", "{source}"]
      - name: compiled
        command: "ruchy compile --run {source}"
        env: {RUST_BACKTRACE: "0"}
    workers: 4
    minimize_max_attempts: 200
"""

from __future__ import annotations

import dataclasses
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import psutil
import yaml

from shadowfuzz.render import RenderTemplate

SOURCE_PLACEHOLDER = "{source}"

DEFAULT_TOOLCHAIN = ("ruchy", "run", SOURCE_PLACEHOLDER)
DEFAULT_SOURCE_SUFFIX = ".ruchy"
DEFAULT_OUTPUT_CAP_BYTES = 64 * 1024
DEFAULT_STARTUP_ALLOWANCE_MS = 500
DEFAULT_KILL_GRACE_MS = 1000
DEFAULT_MINIMIZE_MAX_ATTEMPTS = 200
DEFAULT_CONFIRM_RUNS = 1

ENV_TOOLCHAIN = "SHADOWFUZZ_TOOLCHAIN"
ENV_WORKERS = "SHADOWFUZZ_WORKERS"


@dataclass(frozen=True)
class Backend:
    """One way of running a program: an argv plus extra environment."""

    name: str
    command: tuple[str, ...]
    env: dict[str, str] = field(default_factory=dict)

    def argv(self, source_path: Path | str) -> list[str]:
        """Substitute the program path into the command.

        Every argument containing ``{source}`` gets the path; when none
        does, the path is appended as the last argument.
        """
        path = str(source_path)
        if any(SOURCE_PLACEHOLDER in arg for arg in self.command):
            return [arg.replace(SOURCE_PLACEHOLDER, path) for arg in self.command]
        return [*self.command, path]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], index: int = 0) -> "Backend":
        command = data.get("command")
        if isinstance(command, str):
            command = shlex.split(command)
        if not command or not all(isinstance(arg, str) for arg in command):
            raise ValueError(f"backend #{index}: 'command' must be a non-empty string or list")
        env = data.get("env") or {}
        if not isinstance(env, dict):
            raise ValueError(f"backend #{index}: 'env' must be a mapping")
        return cls(
            name=str(data.get("name", f"backend{index}")),
            command=tuple(command),
            env={str(k): str(v) for k, v in env.items()},
        )


def default_workers() -> int:
    return psutil.cpu_count(logical=True) or 1


@dataclass(frozen=True)
class HarnessConfig:
    backends: tuple[Backend, ...] = (Backend("default", DEFAULT_TOOLCHAIN),)
    source_suffix: str = DEFAULT_SOURCE_SUFFIX
    output_cap_bytes: int = DEFAULT_OUTPUT_CAP_BYTES
    startup_allowance_ms: int = DEFAULT_STARTUP_ALLOWANCE_MS
    kill_grace_ms: int = DEFAULT_KILL_GRACE_MS
    workers: int = field(default_factory=default_workers)
    normalize_output: bool = True
    minimize_max_attempts: int = DEFAULT_MINIMIZE_MAX_ATTEMPTS
    confirm_runs: int = DEFAULT_CONFIRM_RUNS
    render: RenderTemplate = field(default_factory=RenderTemplate)
    # Fixed per-test budget; None means the sum of the test's call timeouts.
    timeout_ms: int | None = None

    @property
    def primary(self) -> Backend:
        return self.backends[0]

    def differential_pair(self) -> tuple[Backend, Backend]:
        if len(self.backends) < 2:
            raise ValueError("differential runs need two configured backends")
        return self.backends[0], self.backends[1]


_SCALAR_FIELDS = {
    "source_suffix": str,
    "output_cap_bytes": int,
    "startup_allowance_ms": int,
    "kill_grace_ms": int,
    "workers": int,
    "normalize_output": bool,
    "minimize_max_attempts": int,
    "confirm_runs": int,
    "timeout_ms": int,
}


def config_from_mapping(data: Mapping[str, Any], base: HarnessConfig | None = None) -> HarnessConfig:
    """Overlay a config-file mapping on ``base`` (defaults when None)."""
    config = base or HarnessConfig()
    known = set(_SCALAR_FIELDS) | {"backends", "render"}
    unknown = set(data) - known
    if unknown:
        raise ValueError(f"unknown config fields: {sorted(unknown)}")

    updates: dict[str, Any] = {}
    for name, kind in _SCALAR_FIELDS.items():
        if name in data:
            updates[name] = kind(data[name])
    if "backends" in data:
        raw = data["backends"]
        if not isinstance(raw, list) or not raw:
            raise ValueError("'backends' must be a non-empty list")
        updates["backends"] = tuple(Backend.from_dict(item, i) for i, item in enumerate(raw))
    if "render" in data:
        updates["render"] = RenderTemplate.from_dict(dict(data["render"]))
    return dataclasses.replace(config, **updates)


def apply_environment(config: HarnessConfig, environ: Mapping[str, str] | None = None) -> HarnessConfig:
    """Apply SHADOWFUZZ_TOOLCHAIN / SHADOWFUZZ_WORKERS overrides.

    The toolchain variable replaces the primary backend's command and keeps
    any further backends.
    """
    environ = os.environ if environ is None else environ
    updates: dict[str, Any] = {}
    toolchain = environ.get(ENV_TOOLCHAIN)
    if toolchain:
        primary = dataclasses.replace(config.primary, command=tuple(shlex.split(toolchain)))
        updates["backends"] = (primary, *config.backends[1:])
    workers = environ.get(ENV_WORKERS)
    if workers:
        try:
            updates["workers"] = max(1, int(workers))
        except ValueError:
            raise ValueError(f"{ENV_WORKERS} must be an integer, got {workers!r}") from None
    return dataclasses.replace(config, **updates) if updates else config


def load_config(path: str | Path | None = None, environ: Mapping[str, str] | None = None) -> HarnessConfig:
    config = HarnessConfig()
    if path is not None:
        try:
            data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"{path}: invalid YAML: {e}") from e
        if not isinstance(data, dict):
            raise ValueError(f"{path}: config must be a mapping")
        config = config_from_mapping(data, config)
    return apply_environment(config, environ)
