import json
import os
from dataclasses import asdict, dataclass, field, fields
from typing import Optional

ROOT = os.path.dirname(os.path.abspath(__file__))
CONFIG_PATH = os.path.join(ROOT, 'config.json')  # can be overridden via CLI/env (see agent.main())

# Env overrides let Docker/ops change a device without rewriting the on-disk config.
ENV_OVERRIDES = {
    "POS_TENANT_ID": "tenant_id",
    "POS_DEVICE_KEY": "device_key",
    "POS_OUTLET_ID": "outlet_id",
    "POS_SYNC_URL": "sync_url",
    "POS_DEFAULT_TENANT_ID": "default_tenant_id",
    "POS_DB_PATH": "db_path",
}


@dataclass
class DeviceConfig:
    tenant_id: Optional[str] = None
    device_key: Optional[str] = None
    outlet_id: Optional[str] = None
    printer_ip: Optional[str] = None
    # Full URL of the sync endpoint, e.g. https://api.example.com/sync
    sync_url: Optional[str] = None
    default_tenant_id: Optional[str] = None
    # Empty means no local database on this device (ephemeral order store).
    db_path: Optional[str] = None
    sync_timeout_seconds: float = 10.0
    # bcrypt hash of the shared staff PIN; attribution only.
    staff_pin_hash: Optional[str] = None
    path: Optional[str] = field(default=None, repr=False, compare=False)

    @classmethod
    def load(cls, path: Optional[str] = None) -> "DeviceConfig":
        path = path or CONFIG_PATH
        data = {}
        if os.path.exists(path):
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f) or {}
        known = {f.name for f in fields(cls)} - {"path"}
        values = {k: v for k, v in data.items() if k in known}
        for env_name, attr in ENV_OVERRIDES.items():
            if os.environ.get(env_name):
                values[attr] = os.environ[env_name]
        if values.get("sync_timeout_seconds") is not None:
            values["sync_timeout_seconds"] = float(values["sync_timeout_seconds"])
        return cls(path=path, **values)

    def reload(self) -> "DeviceConfig":
        """Re-read the file and env overrides this config was loaded from."""
        return DeviceConfig.load(self.path)

    def save(self, path: Optional[str] = None) -> None:
        path = path or self.path or CONFIG_PATH
        data = asdict(self)
        data.pop("path", None)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)
        self.path = path

    def resolve_tenant_id(self) -> Optional[str]:
        return (self.tenant_id or "").strip() or (self.default_tenant_id or "").strip() or None

    def public_dict(self) -> dict:
        """Config safe to show on screen or in logs: no device key, no PIN hash."""
        safe = asdict(self)
        safe.pop("device_key", None)
        safe.pop("staff_pin_hash", None)
        safe.pop("path", None)
        return safe
