"""
Unified configuration loader for transcriptor.

Load order (first found wins):
  1) TRANSCRIPTOR_CONFIG (env, absolute or relative to CWD)
  2) ~/.transcriptor/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) ./config.yaml (current working directory)

Environment variables override file values when present.
"""
from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, MutableMapping

import yaml
from ruamel.yaml import YAML
from ruamel.yaml.comments import CommentedMap

_ROUND_TRIP_YAML = YAML(typ="rt")
_ROUND_TRIP_YAML.indent(mapping=2, sequence=4, offset=2)
_ROUND_TRIP_YAML.default_flow_style = False
_ROUND_TRIP_YAML.allow_unicode = True
_ROUND_TRIP_YAML.preserve_quotes = True

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_DEFAULTS: Dict[str, Any] = {
    "audio": {
        "backend": "arecord",
        "device": "default",
        # ffmpeg only: -f value placed before -i (avfoundation, pulse, alsa, dshow)
        "input_format": "pulse",
        "sample_rate": 48000,
        "channels": 2,
        "sample_type": "s16",
        "layout": "interleaved",
        "read_block_bytes": 4096,
        "backlog_seconds": 10.0,
        "target_sample_rate": 16000,
    },
    "session": {
        "chunk_duration_seconds": 30,
        "stop_poll_interval": 0.5,
    },
    "paths": {
        "state_dir": "~/.transcriptor",
        "transcripts_dir": "~/transcripts",
    },
    "transcription": {
        "engine": "whisper_cpp",
        "whisper_bin": "~/.transcriptor/bin/whisper-cpp/main",
        "whisper_model_dir": "~/.transcriptor/bin/models",
        "model": "large-v3-turbo",
        "language": "en",
        "threads": 4,
        "timeout_seconds": 600.0,
        "max_concurrent_jobs": 4,
        "stall_timeout_seconds": 300.0,
        "vosk_model_path": "~/.transcriptor/models/vosk-small-en-us-0.15",
    },
    "merge": {
        "enabled": True,
        "ffmpeg_path": "ffmpeg",
        "delete_chunks_after_merge": False,
    },
    "logging": {
        "level": "INFO",
        "dev_mode": False,  # if True or ENV DEV=1, enable verbose debug
    },
}

_cfg_cache: Dict[str, Any] | None = None
_active_config_path: Path | None = None
_primary_config_path: Path | None = None


class ConfigPersistenceError(Exception):
    """Raised when configuration changes cannot be persisted."""


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        logging.getLogger("transcriptor.config").warning(
            "ignoring unreadable config %s: %s", path, exc
        )
        return {}
    if isinstance(data, dict):
        return data
    return {}


def _candidate_search_paths(project_root: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("TRANSCRIPTOR_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser().resolve())
    search.extend(
        [
            Path("~/.transcriptor/config.yaml").expanduser(),
            project_root / "config.yaml",
            Path.cwd() / "config.yaml",
        ]
    )
    seen: set[Path] = set()
    ordered: list[Path] = []
    for candidate in search:
        resolved = candidate.resolve()
        if resolved in seen:
            continue
        seen.add(resolved)
        ordered.append(resolved)
    return ordered


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True

    env_map = {
        "AUDIO_DEV": ("audio", "device", str),
        "AUDIO_BACKEND": ("audio", "backend", lambda s: s.strip().lower()),
        "AUDIO_SAMPLE_RATE": ("audio", "sample_rate", int),
        "AUDIO_CHANNELS": ("audio", "channels", int),
        "CHUNK_DURATION_SECONDS": ("session", "chunk_duration_seconds", float),
        "TRANSCRIPTS_DIR": ("paths", "transcripts_dir", str),
        "STATE_DIR": ("paths", "state_dir", str),
        "WHISPER_MODEL": ("transcription", "model", str),
        "TRANSCRIPTION_ENGINE": ("transcription", "engine", lambda s: s.strip().lower()),
        "VOSK_MODEL_PATH": ("transcription", "vosk_model_path", str),
        "LOG_LEVEL": ("logging", "level", lambda s: s.strip().upper()),
        "MERGE_ENABLED": ("merge", "enabled", _parse_bool),
    }
    for env_key, (section, key, cast) in env_map.items():
        raw = os.environ.get(env_key)
        if raw is None or not raw.strip():
            continue
        try:
            cfg.setdefault(section, {})[key] = cast(raw)
        except ValueError:
            logging.getLogger("transcriptor.config").warning(
                "ignoring invalid %s=%r", env_key, raw
            )


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _active_config_path, _primary_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)
    project_root = Path(__file__).resolve().parent.parent

    search = _candidate_search_paths(project_root)

    active: Path | None = None
    for candidate in search:
        if candidate.exists():
            active = candidate
            break

    for candidate in reversed(search):
        cfg = _deep_merge(cfg, _load_yaml_if_exists(candidate))

    _active_config_path = active
    _primary_config_path = active if active is not None else search[0]

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
    if _cfg_cache is None:
        get_cfg()
    return _active_config_path


def expand_path(value: str | os.PathLike[str]) -> Path:
    return Path(os.path.expandvars(str(value))).expanduser()


def configure_logging(cfg: Mapping[str, Any] | None = None) -> None:
    """Install the root handler once, honouring logging.level and DEV mode."""
    cfg = cfg if cfg is not None else get_cfg()
    section = cfg.get("logging", {}) if isinstance(cfg, Mapping) else {}
    level_name = str(section.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    if section.get("dev_mode"):
        level = logging.DEBUG
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger("transcriptor").setLevel(level)


def _coerce_like(default: Any, raw: str) -> Any:
    if isinstance(default, bool):
        lowered = raw.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
        raise ConfigPersistenceError(f"Expected a boolean, got {raw!r}")
    if isinstance(default, int):
        try:
            return int(raw)
        except ValueError as exc:
            raise ConfigPersistenceError(f"Expected an integer, got {raw!r}") from exc
    if isinstance(default, float):
        try:
            return float(raw)
        except ValueError as exc:
            raise ConfigPersistenceError(f"Expected a number, got {raw!r}") from exc
    return raw


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
        os.replace(tmp_path, path)
    except OSError as exc:
        raise ConfigPersistenceError(f"Unable to write configuration: {exc}") from exc


def set_config_value(dotted_key: str, raw_value: str) -> Any:
    """Persist ``section.key = raw_value`` into the primary config file.

    The value is coerced to the type of the built-in default, existing
    comments and ordering in the file are preserved. Returns the coerced
    value as seen by a fresh ``get_cfg()``.
    """
    section, sep, key = dotted_key.partition(".")
    if not sep or not key:
        raise ConfigPersistenceError(f"Key must look like section.key, got {dotted_key!r}")
    defaults = _DEFAULTS.get(section)
    if not isinstance(defaults, dict) or key not in defaults:
        raise ConfigPersistenceError(f"Unknown config key: {dotted_key}")

    value = _coerce_like(defaults[key], raw_value)

    path = primary_config_path()
    document = _load_yaml_for_update(path)
    target = document.get(section)
    if not isinstance(target, MutableMapping):
        target = CommentedMap()
        document[section] = target
    target[key] = value
    _dump_yaml(path, document)

    return reload_cfg()[section][key]
