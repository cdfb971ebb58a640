"""
auth/password_policy.py -- Password strength scoring and reuse detection.

score() runs five independent 20-point checks (length, uppercase, lowercase,
digit, special character). A denylist hit subtracts 40 points (floor 0) and
adds an error, independently of the positive checks. `valid` means zero
errors; `score` is a UX signal only and gets length bonuses (+10 at 12 chars,
+10 more at 16, capped at 100).

Reuse detection compares the candidate against every stored bcrypt hash with
bcrypt.checkpw (constant-time per entry) and does not stop at the first
match, so the cost does not reveal which history slot matched.
"""

from __future__ import annotations

import re

from auth.errors import PasswordReused, PolicyViolation
from auth.models import PasswordScore
from auth.tokens import verify_password

HISTORY_LIMIT = 5

SPECIAL_CHARACTERS = "!@#$%^&*()_+-=[]{};':\"\\|,.<>/?"

COMMON_PASSWORDS: frozenset[str] = frozenset(
    {
        "password",
        "password123",
        "12345678",
        "qwerty",
        "abc123",
        "monkey",
        "1234567890",
        "letmein",
        "trustno1",
        "dragon",
        "baseball",
        "iloveyou",
        "master",
        "sunshine",
        "ashley",
        "bailey",
        "passw0rd",
        "shadow",
        "123123",
        "654321",
    }
)

_UPPER_RE = re.compile(r"[A-Z]")
_LOWER_RE = re.compile(r"[a-z]")
_DIGIT_RE = re.compile(r"[0-9]")
_SPECIAL_RE = re.compile("[" + re.escape(SPECIAL_CHARACTERS) + "]")


def strength_level(score: int) -> str:
    if score >= 80:
        return "strong"
    if score >= 60:
        return "moderate"
    if score >= 40:
        return "weak"
    return "very weak"


class PasswordPolicyEngine:
    """Stateless policy checks, configured once from Settings.

    Args:
        min_length: PASSWORD_MIN_LENGTH.
        enforce_strength: REQUIRE_STRONG_PASSWORD. When False, enforce()
            skips the strength check but still rejects reused passwords.
    """

    def __init__(self, min_length: int = 8, enforce_strength: bool = True) -> None:
        self.min_length = min_length
        self.enforce_strength = enforce_strength

    def score(self, password: str) -> PasswordScore:
        password = password or ""
        errors: list[str] = []
        score = 0

        if len(password) < self.min_length:
            errors.append(f"Password must be at least {self.min_length} characters long")
        else:
            score += 20

        if _UPPER_RE.search(password) is None:
            errors.append("Password must contain at least one uppercase letter")
        else:
            score += 20

        if _LOWER_RE.search(password) is None:
            errors.append("Password must contain at least one lowercase letter")
        else:
            score += 20

        if _DIGIT_RE.search(password) is None:
            errors.append("Password must contain at least one number")
        else:
            score += 20

        if _SPECIAL_RE.search(password) is None:
            errors.append(f"Password must contain at least one special character ({SPECIAL_CHARACTERS})")
        else:
            score += 20

        if password.lower() in COMMON_PASSWORDS:
            errors.append("This password is too common. Please choose a more unique password")
            score = max(0, score - 40)

        if len(password) >= 12:
            score += 10
        if len(password) >= 16:
            score += 10

        score = min(100, score)
        return PasswordScore(valid=not errors, errors=errors, score=score, level=strength_level(score))

    def check_reuse(self, new_password: str, history_hashes: list[str]) -> bool:
        """Return True if new_password matches any of the most recent history hashes."""
        reused = False
        for old_hash in history_hashes[:HISTORY_LIMIT]:
            if verify_password(new_password, old_hash):
                reused = True
        return reused

    @staticmethod
    def record_new_password(new_hash: str, history: list[str]) -> list[str]:
        """Return a new history list: new_hash first, truncated to HISTORY_LIMIT.

        The input list is not mutated so a failed commit leaves the caller's
        copy untouched.
        """
        return [new_hash, *history][:HISTORY_LIMIT]

    def enforce(self, password: str, history_hashes: list[str] | None = None) -> PasswordScore:
        """Run the strength and reuse checks, raising on the first failing stage.

        Raises:
            PolicyViolation: strength check failed (only when enforce_strength).
            PasswordReused: password matches recent history.
        """
        result = self.score(password)
        if self.enforce_strength and not result.valid:
            raise PolicyViolation(
                "Password does not meet security requirements.",
                errors=result.errors,
                score=result.score,
            )
        if history_hashes and self.check_reuse(password, history_hashes):
            raise PasswordReused()
        return result
