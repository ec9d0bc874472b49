"""
API key pool: round-robin key rotation with status tracking.
Each usable key is one capacity unit for batch_optimizer.
"""
import re
import time
from dataclasses import dataclass
from pathlib import Path

RATE_LIMIT_RECOVERY_SECONDS = 5 * 60
MAX_ERRORS_BEFORE_DEAD = 3
MIN_KEY_LENGTH = 20  # Shorter strings are treated as noise, not keys

KEY_STATUSES = ("unknown", "active", "rate_limited", "dead")


def _log(msg: str) -> None:
    print(f"[KEYS] {msg}")


def mask_key(key: str) -> str:
    """Key fingerprint safe for logs: first 4 and last 4 characters."""
    return f"{key[:4]}...{key[-4:]}" if len(key) > 8 else "****"


@dataclass
class ApiKeyInfo:
    key: str
    status: str = "unknown"
    usage_count: int = 0
    last_used: float = 0.0
    error_count: int = 0
    last_error: str | None = None
    rate_limit_reset_time: float | None = None


class ApiKeyPool:
    def __init__(self, keys: list[str] | None = None):
        self.keys: list[ApiKeyInfo] = []
        self.current_index = 0
        if keys:
            self.set_keys(keys)

    @classmethod
    def from_file(cls, path: str | Path) -> "ApiKeyPool":
        pool = cls()
        pool.add_keys_from_input(Path(path).read_text(encoding="utf-8"))
        return pool

    def add_keys_from_input(self, text: str) -> int:
        """Add keys separated by newlines, commas or semicolons. Returns how many were new."""
        candidates = [k.strip() for k in re.split(r"[\n,;]", text or "")]
        added = 0
        known = {info.key for info in self.keys}
        for key in candidates:
            if len(key) <= MIN_KEY_LENGTH or key in known:
                continue
            self.keys.append(ApiKeyInfo(key=key))
            known.add(key)
            added += 1
        if added:
            _log(f"Added {added} key(s); pool size {len(self.keys)}")
        return added

    def set_keys(self, keys: list[str]) -> None:
        self.keys = [ApiKeyInfo(key=k) for k in dict.fromkeys(keys) if k]
        self.current_index = 0

    def remove_key(self, key: str) -> None:
        self.keys = [info for info in self.keys if info.key != key]
        if self.current_index >= len(self.keys):
            self.current_index = 0

    def clear(self) -> None:
        self.keys = []
        self.current_index = 0

    def _get(self, key: str) -> ApiKeyInfo | None:
        return next((info for info in self.keys if info.key == key), None)

    def _refresh(self, info: ApiKeyInfo, now: float) -> None:
        if info.status == "rate_limited" and info.rate_limit_reset_time and now > info.rate_limit_reset_time:
            info.status = "active"
            info.error_count = 0
            info.rate_limit_reset_time = None

    def next_key(self) -> str | None:
        """Next usable key in round-robin order, or None if every key is rate limited or dead."""
        if not self.keys:
            return None
        now = time.time()
        for _ in range(len(self.keys)):
            info = self.keys[self.current_index]
            self.current_index = (self.current_index + 1) % len(self.keys)
            self._refresh(info, now)
            if info.status in ("active", "unknown"):
                info.usage_count += 1
                info.last_used = now
                return info.key
        return None

    def mark_success(self, key: str) -> None:
        info = self._get(key)
        if info:
            info.status = "active"
            info.error_count = 0

    def mark_rate_limited(self, key: str) -> None:
        info = self._get(key)
        if info:
            info.status = "rate_limited"
            info.rate_limit_reset_time = time.time() + RATE_LIMIT_RECOVERY_SECONDS
            _log(f"Key {mask_key(key)} rate limited; retry after {RATE_LIMIT_RECOVERY_SECONDS // 60} minutes")

    def mark_error(self, key: str, error: str) -> None:
        info = self._get(key)
        if not info:
            return
        info.error_count += 1
        info.last_error = error
        if info.error_count >= MAX_ERRORS_BEFORE_DEAD:
            info.status = "dead"
            _log(f"Key {mask_key(key)} marked dead after {info.error_count} errors")

    def mark_dead(self, key: str, error: str) -> None:
        info = self._get(key)
        if info:
            info.status = "dead"
            info.last_error = error
            _log(f"Key {mask_key(key)} marked dead: {error}")

    def available_count(self) -> int:
        """Keys that are active, unknown, or whose rate limit has expired."""
        now = time.time()
        for info in self.keys:
            self._refresh(info, now)
        return sum(1 for info in self.keys if info.status in ("active", "unknown"))

    def status_counts(self) -> dict[str, int]:
        counts = {status: 0 for status in KEY_STATUSES}
        for info in self.keys:
            counts[info.status] += 1
        return counts
