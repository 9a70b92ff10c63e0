from __future__ import annotations

from collections.abc import Iterable, Sequence

from notifier.models import Account

DEFAULT_BATCH_SIZE = 500
MIN_TOKEN_LENGTH = 80
# Registration tokens issued by FCM carry this segment after the instance id.
TOKEN_MARKER = "apa91b"


def normalize_token(token: object) -> str:
    if token is None:
        return ""
    return str(token).strip()


def dedupe(tokens: Iterable[object]) -> list[str]:
    seen: set[str] = set()
    unique: list[str] = []
    for token in tokens:
        normalized = normalize_token(token)
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        unique.append(normalized)
    return unique


def batch(tokens: Sequence[str], size: int = DEFAULT_BATCH_SIZE) -> list[list[str]]:
    if size <= 0:
        raise ValueError("Batch size must be positive.")
    return [list(tokens[start : start + size]) for start in range(0, len(tokens), size)]


def is_likely_valid(token: str) -> bool:
    """Cheap structural pre-screen; it can both accept garbage and reject real tokens."""
    candidate = normalize_token(token)
    if len(candidate) <= MIN_TOKEN_LENGTH:
        return False
    return ":" in candidate and TOKEN_MARKER in candidate.lower()


def partition_valid(tokens: Iterable[str]) -> tuple[list[str], list[str]]:
    valid: list[str] = []
    skipped: list[str] = []
    for token in tokens:
        (valid if is_likely_valid(token) else skipped).append(token)
    return valid, skipped


def collect_tokens(accounts: Iterable[Account]) -> list[str]:
    def iter_tokens() -> Iterable[str]:
        for account in accounts:
            yield from account.tokens
            if account.last_token:
                yield account.last_token

    return dedupe(iter_tokens())
