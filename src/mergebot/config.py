from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import tomllib
from typing import cast

from mergebot.commands import MERGE_COMMAND
from mergebot.merge_command import MERGING_LABEL
from mergebot.statuses import SQUASH_CONTEXT


@dataclass(frozen=True)
class RuntimeConfig:
    base_dir: Path
    log_to_file: bool = False

    @property
    def log_dir(self) -> Path | None:
        return self.base_dir if self.log_to_file else None


@dataclass(frozen=True)
class MergeConfig:
    merging_label: str = MERGING_LABEL
    squash_context: str = SQUASH_CONTEXT
    merge_command: str = MERGE_COMMAND


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    merge: MergeConfig = field(default_factory=MergeConfig)


class ConfigError(ValueError):
    pass


def load_config(path: Path) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    runtime_data = _require_table(data, "runtime")
    merge_data = _optional_table(data, "merge") or {}

    runtime = RuntimeConfig(
        base_dir=Path(_require_str(runtime_data, "base_dir")).expanduser(),
        log_to_file=_bool_with_default(runtime_data, "log_to_file", False),
    )
    merge = MergeConfig(
        merging_label=_str_with_default(merge_data, "merging_label", MERGING_LABEL),
        squash_context=_str_with_default(merge_data, "squash_context", SQUASH_CONTEXT),
        merge_command=_str_with_default(merge_data, "merge_command", MERGE_COMMAND),
    )
    if merge.merge_command != merge.merge_command.strip():
        raise ConfigError("merge_command must not have leading or trailing whitespace")

    return AppConfig(runtime=runtime, merge=merge)


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] is required and must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value
