from __future__ import annotations

import configparser
import os
from dataclasses import dataclass, field
from pathlib import Path


CONFIG_FILE_ENV = "ICMP_PING_CONFIG_FILE"
DEFAULT_CONFIG_FILE = "config.ini"

# Every setting has an environment name and an INI location; the environment wins.
_SETTINGS: dict[str, tuple[str, str]] = {
    "ICMP_PING_LOG_LEVEL": ("common", "log_level"),
    "ICMP_PING_REPLY_TIMEOUT_MS": ("session", "reply_timeout_ms"),
}

_ENV_BY_INI_KEY: dict[tuple[str, str], str] = {ini_key: env_name for env_name, ini_key in _SETTINGS.items()}


def _describe_section_keys(section: str) -> str:
    names = sorted(key for (owner, key) in _ENV_BY_INI_KEY if owner == section)
    return ", ".join(f"{key} ({_ENV_BY_INI_KEY[(section, key)]})" for key in names)


@dataclass(frozen=True)
class _IniValues:
    path: Path | None = None
    values: dict[tuple[str, str], str] = field(default_factory=dict)


@dataclass(frozen=True)
class _ConfigResolver:
    ini: _IniValues

    @classmethod
    def from_environment(cls) -> "_ConfigResolver":
        path = _config_file_path()
        return cls(ini=_read_ini(path) if path is not None else _IniValues())

    def lookup(self, env_name: str) -> tuple[str, str] | None:
        """Return ``(value, origin)`` for a setting, or ``None`` when it is unset."""
        env_value = os.getenv(env_name)
        if env_value is not None:
            return env_value, env_name
        section, key = _SETTINGS[env_name]
        ini_value = self.ini.values.get((section, key))
        if ini_value is None:
            return None
        return ini_value, f"[{section}] {key} in {self.ini.path} ({env_name})"

    def integer(self, env_name: str, default: int) -> int:
        found = self.lookup(env_name)
        if found is None:
            return default
        value, origin = found
        try:
            return int(value.strip())
        except ValueError as exc:
            raise ValueError(f"{origin} must be an integer, got {value!r}") from exc

    def text(self, env_name: str, default: str) -> str:
        found = self.lookup(env_name)
        return default if found is None else found[0].strip()


def _config_file_path() -> Path | None:
    """Path of the INI file to read, or ``None`` when there is nothing to read."""
    configured = os.getenv(CONFIG_FILE_ENV)
    if configured is None:
        default_path = Path(DEFAULT_CONFIG_FILE)
        return default_path if default_path.exists() else None
    if not configured.strip():
        raise ValueError(f"{CONFIG_FILE_ENV} is set but empty")
    path = Path(configured.strip())
    if not path.exists():
        raise ValueError(f"config file not found: {path} (from {CONFIG_FILE_ENV})")
    return path


def _read_ini(path: Path) -> _IniValues:
    parser = configparser.ConfigParser(interpolation=None, default_section="__unused_defaults__")
    try:
        with path.open("r", encoding="utf-8") as config_file:
            parser.read_file(config_file)
    except (OSError, configparser.Error) as exc:
        raise ValueError(f"failed to load config file {path}: {exc}") from exc

    known_sections = {section for section, _key in _ENV_BY_INI_KEY}
    values: dict[tuple[str, str], str] = {}
    for section_name in parser.sections():
        section = section_name.strip().lower()
        if section not in known_sections:
            raise ValueError(
                f"unknown config section [{section_name}] in {path}; "
                f"expected one of: {', '.join(sorted(known_sections))}"
            )
        for key_name, value in parser.items(section_name, raw=True):
            key = key_name.strip().lower()
            if (section, key) not in _ENV_BY_INI_KEY:
                raise ValueError(
                    f"unknown config key '{key_name}' in section [{section_name}] in {path}; "
                    f"supported keys: {_describe_section_keys(section)}"
                )
            values[(section, key)] = value
    return _IniValues(path=path, values=values)


@dataclass(frozen=True)
class PingConfig:
    log_level: str = "WARNING"
    reply_timeout_ms: int = 5000


def load_ping_config() -> PingConfig:
    resolver = _ConfigResolver.from_environment()
    return PingConfig(
        log_level=resolver.text("ICMP_PING_LOG_LEVEL", "WARNING").upper(),
        reply_timeout_ms=max(1, resolver.integer("ICMP_PING_REPLY_TIMEOUT_MS", 5000)),
    )
