#!/usr/bin/env python3
"""
Unified configuration loader for autosplit.

Load order (first found wins):
  1) AUTOSPLIT_CONFIG (env, absolute or relative to CWD)
  2) /etc/autosplit/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) <script_dir>/config.yaml (directory of the running script)
  5) ./config.yaml (current working directory)

Environment variables override file values when present.
"""
from __future__ import annotations

import copy
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, MutableMapping

import yaml
from ruamel.yaml import YAML
from ruamel.yaml.comments import CommentedMap, CommentedSeq

_ROUND_TRIP_YAML = YAML(typ="rt")
_ROUND_TRIP_YAML.indent(mapping=2, sequence=4, offset=2)
_ROUND_TRIP_YAML.default_flow_style = False
_ROUND_TRIP_YAML.allow_unicode = True
_ROUND_TRIP_YAML.preserve_quotes = True

_DEFAULTS: Dict[str, Any] = {
    "paths": {
        "record_dir": "/apps/autosplit/recordings",
        "title_log_dir": "/apps/autosplit/titles",
    },
    "rooms": [],
    "monitor": {
        "poll_interval_sec": 30.0,
        "disk_usage_interval_sec": 1.0,
    },
    "recording": {
        "ffmpeg_path": "ffmpeg",
        "extension": "flv",
        "stop_timeout_sec": 10.0,
        "user_agent": "Mozilla/5.0 (X11; Linux x86_64) autosplit/1.0",
    },
    "conversion": {
        "auto_convert": False,
        "target_extension": "mp4",
        "delete_after_convert": False,
        "delete_to_recycle": True,
        "fix_timestamp": True,
        "max_concurrent": 0,
        "ffmpeg_path": "ffmpeg",
        "ffprobe_path": "ffprobe",
    },
    "api": {
        "live_base_url": "https://api.live.bilibili.com",
        "passport_base_url": "https://passport.bilibili.com",
        "timeout_sec": 10.0,
    },
    "credentials": {
        "token": "",
    },
    "logging": {
        "dev_mode": False,  # if True or ENV DEV=1, enable verbose debug
        "max_entries": 1000,
    },
    "notifications": {
        "enabled": False,
        "webhook": {},
    },
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None
_primary_config_path: Path | None = None

log = logging.getLogger("autosplit.config")


class ConfigPersistenceError(Exception):
    """Raised when configuration changes cannot be persisted."""


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        # Ignore parse errors and continue with other locations/defaults
        log.warning("ignoring unreadable config %s: %s", path, exc)
        return {}
    return data if isinstance(data, dict) else {}


def _candidate_search_paths(project_root: Path, script_dir: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("AUTOSPLIT_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser().resolve())
    search.extend(
        [
            Path("/etc/autosplit/config.yaml"),
            project_root / "config.yaml",
            script_dir / "config.yaml",
            Path.cwd() / "config.yaml",
        ]
    )
    seen: set[Path] = set()
    ordered: list[Path] = []
    for candidate in search:
        try:
            resolved = candidate.resolve()
        except OSError:
            resolved = candidate
        if resolved in seen:
            continue
        seen.add(resolved)
        ordered.append(resolved)
    return ordered


def _resolve_primary_path(search: list[Path], active: Path | None) -> Path:
    env_cfg = os.getenv("AUTOSPLIT_CONFIG")
    if env_cfg:
        return Path(env_cfg).expanduser().resolve()
    if active is not None:
        return active
    for candidate in search:
        if str(candidate).startswith("/etc/"):
            continue
        return candidate
    return Path.cwd() / "config.yaml"


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    def _parse_bool(value: str) -> bool:
        return value.strip().lower() in {"1", "true", "yes", "on"}

    # DEV mode
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True
    # Paths
    if "REC_DIR" in os.environ:
        cfg.setdefault("paths", {})["record_dir"] = os.environ["REC_DIR"]
    if "TITLE_LOG_DIR" in os.environ:
        cfg.setdefault("paths", {})["title_log_dir"] = os.environ["TITLE_LOG_DIR"]

    env_map = {
        "POLL_INTERVAL_SEC": ("monitor", "poll_interval_sec", float),
        "DISK_USAGE_INTERVAL_SEC": ("monitor", "disk_usage_interval_sec", float),
        "AUTO_CONVERT": ("conversion", "auto_convert", _parse_bool),
        "CONVERT_MAX_CONCURRENT": ("conversion", "max_concurrent", int),
        "FFMPEG_PATH": ("recording", "ffmpeg_path", str),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key in os.environ:
            try:
                cfg.setdefault(section, {})[key] = cast(os.environ[env_key])
            except ValueError:
                log.warning("ignoring invalid %s=%r", env_key, os.environ[env_key])

    if "AUTOSPLIT_TOKEN" in os.environ:
        value = os.environ["AUTOSPLIT_TOKEN"].strip()
        if value:
            cfg.setdefault("credentials", {})["token"] = value


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path, _primary_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # <root>/autosplit -> <root>
    project_root = Path(__file__).resolve().parent.parent

    # Derive script directory (useful for tools run as ./tool.py)
    try:
        script_dir = Path(sys.argv[0]).resolve().parent
    except (IndexError, OSError):
        script_dir = Path.cwd()

    search = _candidate_search_paths(project_root, script_dir)
    _search_paths = list(search)

    active: Path | None = None
    for candidate in search:
        try:
            if candidate.exists():
                active = candidate
                break
        except OSError:
            continue

    for candidate in reversed(search):
        cfg = _deep_merge(cfg, _load_yaml_if_exists(candidate))

    _active_config_path = active
    _primary_config_path = _resolve_primary_path(search, active)

    _apply_env_overrides(cfg)
    _cfg_cache = cfg
    return cfg


def reload_cfg() -> Dict[str, Any]:
    global _cfg_cache
    _cfg_cache = None
    return get_cfg()


def primary_config_path() -> Path:
    if _primary_config_path is None:
        get_cfg()
    assert _primary_config_path is not None
    return _primary_config_path


def active_config_path() -> Path | None:
    if _active_config_path is None:
        get_cfg()
    return _active_config_path


def search_paths() -> list[Path]:
    if not _search_paths:
        get_cfg()
    return list(_search_paths)


def _convert_to_round_trip(value: Any) -> Any:
    if isinstance(value, Mapping):
        mapped = CommentedMap()
        for key, item in value.items():
            mapped[key] = _convert_to_round_trip(item)
        return mapped
    if isinstance(value, (list, tuple)):
        seq = CommentedSeq()
        for item in value:
            seq.append(_convert_to_round_trip(item))
        return seq
    return value


def _load_yaml_for_update(path: Path) -> MutableMapping[str, Any]:
    if not path.exists():
        return CommentedMap()
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = _ROUND_TRIP_YAML.load(handle)
    except Exception as exc:
        raise ConfigPersistenceError(f"Unable to read configuration: {exc}") from exc
    if data is None:
        return CommentedMap()
    if not isinstance(data, MutableMapping):
        raise ConfigPersistenceError("Configuration root must be a mapping")
    return data


def _dump_yaml(path: Path, payload: MutableMapping[str, Any]) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ConfigPersistenceError(f"Unable to create configuration directory: {exc}") from exc
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    try:
        with tmp_path.open("w", encoding="utf-8") as handle:
            _ROUND_TRIP_YAML.dump(payload, handle)
        tmp_path.replace(path)
    except Exception as exc:
        try:
            tmp_path.unlink()
        except OSError:
            pass
        raise ConfigPersistenceError(f"Unable to write configuration: {exc}") from exc


def _replace_mapping(target: MutableMapping[str, Any], values: Mapping[str, Any]) -> None:
    for key, value in values.items():
        existing = target.get(key)
        if isinstance(value, Mapping) and isinstance(existing, MutableMapping):
            _replace_mapping(existing, value)
        else:
            target[key] = _convert_to_round_trip(value)


def _persist_settings_section(section: str, settings: Any, *, merge: bool = True) -> Any:
    primary_path = primary_config_path()
    document = _load_yaml_for_update(primary_path)

    if isinstance(settings, Mapping):
        target = document.get(section)
        if merge and isinstance(target, MutableMapping):
            _replace_mapping(target, settings)
        else:
            document[section] = _convert_to_round_trip(settings)
    elif isinstance(settings, (list, tuple)):
        document[section] = _convert_to_round_trip(list(settings))
    else:
        raise ConfigPersistenceError(f"{section} settings payload must be a mapping or list")

    _dump_yaml(primary_path, document)
    return reload_cfg().get(section)


def update_rooms(rooms: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    payload = [dict(room) for room in rooms]
    return list(_persist_settings_section("rooms", payload) or [])


def update_credentials_settings(settings: Dict[str, Any]) -> Dict[str, Any]:
    return _persist_settings_section("credentials", settings, merge=True)


def update_conversion_settings(settings: Dict[str, Any]) -> Dict[str, Any]:
    return _persist_settings_section("conversion", settings, merge=True)


def update_paths_settings(settings: Dict[str, Any]) -> Dict[str, Any]:
    return _persist_settings_section("paths", settings, merge=True)


class ConfigStore:
    """Accessor handed to the orchestrator; the only way the core touches config.

    Reads always go through ``get_cfg()`` so edits made by other tools show
    up after ``reload_cfg()``. Writes use the round-trip dumper so comments
    in the user's YAML survive.
    """

    def __init__(self, cfg: Dict[str, Any] | None = None, *, persist: bool = True) -> None:
        self._override = cfg
        self._persist = persist

    def cfg(self) -> Dict[str, Any]:
        return self._override if self._override is not None else get_cfg()

    def section(self, name: str) -> Dict[str, Any]:
        value = self.cfg().get(name)
        return value if isinstance(value, dict) else {}

    def rooms(self) -> List[Dict[str, Any]]:
        raw = self.cfg().get("rooms") or []
        return [dict(entry) for entry in raw if isinstance(entry, Mapping)]

    def save_rooms(self, rooms: Iterable[Mapping[str, Any]]) -> None:
        payload = [dict(room) for room in rooms]
        if self._override is not None:
            self._override["rooms"] = payload
        if self._persist:
            update_rooms(payload)

    @property
    def record_dir(self) -> Path:
        return Path(self.section("paths").get("record_dir") or ".").expanduser()

    @property
    def token(self) -> str:
        return str(self.section("credentials").get("token") or "")

    def save_token(self, token: str) -> None:
        if self._override is not None:
            self._override.setdefault("credentials", {})["token"] = token
        if self._persist:
            update_credentials_settings({"token": token})
