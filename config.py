"""Client settings and a simple JSON-based config store."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields
from pathlib import Path

HISTORY_KEY = "voice_chat_history"
STORAGE_BUDGET_BYTES = int(4.6 * 1024 * 1024)
STORAGE_QUOTA_BYTES = 5 * 1024 * 1024
TRIM_RATIO = 0.7
EMERGENCY_KEEP = 50
SAVE_DEBOUNCE_MS = 100
SILENCE_TIMEOUT_MS = 3000
NOTIFICATION_TTL_MS = 4000
REQUEST_TIMEOUT_S = 10.0

CONFIG_DIR = Path.home() / ".config" / "voice_chat"


@dataclass
class ClientSettings:
    server_url: str = "http://localhost:8000"
    api_key: str = ""
    hotkey: str = "Key.alt_l"
    auto_stop: bool = True
    silence_timeout_ms: int = SILENCE_TIMEOUT_MS
    audio_enabled: bool = True
    volume: int = 50


class JsonConfigStore:
    def __init__(self, path: Path | None = None) -> None:
        self._path = path or CONFIG_DIR / "config.json"
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def get_api_key(self) -> str:
        data = self._read_all()
        return str(data.get("api_key", ""))

    def set_api_key(self, key: str) -> None:
        data = self._read_all()
        data["api_key"] = key
        self._write_all(data)

    def get_hotkey(self) -> str:
        data = self._read_all()
        return str(data.get("hotkey", ClientSettings.hotkey))

    def set_hotkey(self, hotkey: str) -> None:
        data = self._read_all()
        data["hotkey"] = hotkey
        self._write_all(data)

    def load_settings(self) -> ClientSettings:
        """Build settings from the file, ignoring unknown or mistyped entries."""
        data = self._read_all()
        settings = ClientSettings()
        for f in fields(ClientSettings):
            if f.name not in data:
                continue
            default = getattr(settings, f.name)
            value = data[f.name]
            if isinstance(default, bool):
                if isinstance(value, bool):
                    setattr(settings, f.name, value)
            elif isinstance(default, int):
                if isinstance(value, int) and not isinstance(value, bool):
                    setattr(settings, f.name, value)
            else:
                setattr(settings, f.name, str(value))
        return settings

    def save_settings(self, settings: ClientSettings) -> None:
        data = self._read_all()
        data.update(asdict(settings))
        self._write_all(data)

    def _read_all(self) -> dict:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: dict) -> None:
        self._path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
