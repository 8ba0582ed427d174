"""Password strength rules for generated service credentials."""

from __future__ import annotations

import re

MIN_LENGTH = 12

_CLASSES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"[a-z]"), "a lowercase letter"),
    (re.compile(r"[A-Z]"), "an uppercase letter"),
    (re.compile(r"\d"), "a digit"),
    (re.compile(r"[^A-Za-z0-9]"), "a special character"),
)

_REPEATED = re.compile(r"(.)\1{2,}")
_COMMON_WORDS = re.compile(r"password|passw0rd|qwerty|letmein|admin|welcome|iloveyou|kaspa123", re.I)
_RUNS = ("0123456789", "abcdefghijklmnopqrstuvwxyz", "qwertyuiop", "asdfghjkl", "zxcvbnm")


def _has_sequence(password: str, length: int = 3) -> bool:
    """True if the password contains an ascending or descending run (abc, 321, qwe)."""
    lowered = password.lower()
    for run in _RUNS:
        for seq in (run, run[::-1]):
            for i in range(len(seq) - length + 1):
                if seq[i:i + length] in lowered:
                    return True
    return False


def check_password_strength(password: str, min_length: int = MIN_LENGTH) -> list[str]:
    """Return the list of problems with a password (empty means strong)."""
    problems: list[str] = []
    if len(password) < min_length:
        problems.append(f"Password must be at least {min_length} characters")

    missing = [label for pattern, label in _CLASSES if not pattern.search(password)]
    if missing:
        problems.append("Password must contain " + ", ".join(missing))

    if _REPEATED.search(password):
        problems.append("Password must not repeat the same character three times in a row")
    if _has_sequence(password):
        problems.append("Password must not contain sequences like 123 or abc")
    if _COMMON_WORDS.search(password):
        problems.append("Password must not contain common words")
    return problems


def is_strong_password(password: str) -> bool:
    return not check_password_strength(password)
