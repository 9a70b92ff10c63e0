from __future__ import annotations

import os
from dataclasses import dataclass

from common.utils import parse_bool

DEFAULT_MONGO_URL = "mongodb://localhost:27017"
DEFAULT_DB_NAME = "qa"
MAX_BATCH_SIZE = 500
DEFAULT_SEND_TIMEOUT_SECONDS = 30.0

TRIGGER_HOOK = "hook"
TRIGGER_WATCHER = "watcher"
TRIGGER_BOTH = "both"
TRIGGER_OFF = "off"
TRIGGER_MODES = (TRIGGER_HOOK, TRIGGER_WATCHER, TRIGGER_BOTH, TRIGGER_OFF)


@dataclass(frozen=True)
class NotifierSettings:
    mongo_url: str = DEFAULT_MONGO_URL
    mongo_db: str = DEFAULT_DB_NAME
    firebase_credentials_json: str | None = None
    firebase_credentials_path: str | None = None
    trigger: str = TRIGGER_HOOK
    vendor_matching: bool = True
    token_filter: bool = True
    auto_assign: bool = True
    prune_invalid_tokens: bool = False
    batch_size: int = MAX_BATCH_SIZE
    send_timeout_seconds: float = DEFAULT_SEND_TIMEOUT_SECONDS
    api_key: str | None = None

    def __post_init__(self) -> None:
        if self.trigger not in TRIGGER_MODES:
            raise ValueError(f"NOTIFIER_TRIGGER must be one of {', '.join(TRIGGER_MODES)}.")
        if self.send_timeout_seconds <= 0:
            raise ValueError("NOTIFIER_SEND_TIMEOUT_SECONDS must be positive.")
        # The provider rejects multicast calls above 500 tokens.
        object.__setattr__(self, "batch_size", max(1, min(self.batch_size, MAX_BATCH_SIZE)))

    @property
    def hook_enabled(self) -> bool:
        return self.trigger in (TRIGGER_HOOK, TRIGGER_BOTH)

    @property
    def watcher_enabled(self) -> bool:
        return self.trigger in (TRIGGER_WATCHER, TRIGGER_BOTH)

    @classmethod
    def from_env(cls) -> NotifierSettings:
        return cls(
            mongo_url=os.getenv("MONGO_URL", DEFAULT_MONGO_URL).strip() or DEFAULT_MONGO_URL,
            mongo_db=os.getenv("MONGO_DB", DEFAULT_DB_NAME).strip() or DEFAULT_DB_NAME,
            firebase_credentials_json=os.getenv("FIREBASE_SERVICE_ACCOUNT_JSON", "").strip()
            or None,
            firebase_credentials_path=os.getenv("FIREBASE_SERVICE_ACCOUNT_PATH", "").strip()
            or None,
            trigger=os.getenv("NOTIFIER_TRIGGER", TRIGGER_HOOK).strip().lower() or TRIGGER_HOOK,
            vendor_matching=parse_bool(os.getenv("NOTIFIER_VENDOR_MATCHING"), default=True),
            token_filter=parse_bool(os.getenv("NOTIFIER_TOKEN_FILTER"), default=True),
            auto_assign=parse_bool(os.getenv("NOTIFIER_AUTO_ASSIGN"), default=True),
            prune_invalid_tokens=parse_bool(
                os.getenv("NOTIFIER_PRUNE_INVALID_TOKENS"), default=False
            ),
            batch_size=int(os.getenv("NOTIFIER_BATCH_SIZE", str(MAX_BATCH_SIZE))),
            send_timeout_seconds=float(
                os.getenv("NOTIFIER_SEND_TIMEOUT_SECONDS", str(DEFAULT_SEND_TIMEOUT_SECONDS))
            ),
            api_key=os.getenv("NOTIFIER_API_KEY", "").strip() or None,
        )
