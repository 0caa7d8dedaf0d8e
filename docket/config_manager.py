from __future__ import annotations

import copy
import errno
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from docket.models import AppConfig, default_app_config

MASK = "***"


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _merge_accounts(current: list[dict[str, Any]], incoming: list[Any]) -> list[dict[str, Any]]:
    # Accounts are matched by id; a blank or masked password keeps the stored secret.
    by_id = {str(item.get("id", "")): item for item in current if isinstance(item, dict)}
    merged: list[dict[str, Any]] = []
    for item in incoming:
        if not isinstance(item, dict):
            continue
        previous = by_id.get(str(item.get("id", "")).strip(), {})
        account = _deep_merge(previous, item)
        if str(account.get("password", "")).strip() in {"", MASK}:
            account["password"] = previous.get("password", "")
        merged.append(account)
    return merged


class ConfigManager:
    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        self._ensure_exists()

    def _ensure_exists(self) -> None:
        if self.config_path.exists():
            return
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self.save(default_app_config())

    def load(self) -> AppConfig:
        with self._lock:
            with self.config_path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
            return AppConfig.from_dict(data)

    def _dump(self, config_dict: dict[str, Any], path: Path) -> None:
        with path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(
                config_dict,
                handle,
                sort_keys=False,
                allow_unicode=True,
                default_flow_style=False,
            )

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            config_dict = config.to_dict()
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            self._dump(config_dict, tmp_path)
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Some bind-mounted single files in containers cannot be atomically replaced.
                if exc.errno != errno.EBUSY:
                    raise
                self._dump(config_dict, self.config_path)
                if tmp_path.exists():
                    tmp_path.unlink()

    def update(self, payload: dict[str, Any]) -> AppConfig:
        with self._lock:
            current = self.load().to_dict()
            payload = dict(payload)
            accounts = payload.pop("accounts", None)
            merged = _deep_merge(current, payload)
            if isinstance(accounts, list):
                merged["accounts"] = _merge_accounts(current.get("accounts", []), accounts)
            config = AppConfig.from_dict(merged)
            self.save(config)
            return config

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        for account in config.get("accounts", []):
            if account.get("password"):
                account["password"] = MASK
        return config
