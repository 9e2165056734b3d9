"""Deterministic identifiers: run ids, branch names and pattern keys."""

from __future__ import annotations

import hashlib
import re
import secrets
import string
from datetime import UTC, datetime
from typing import Final

from buildwave.constants import DEFAULT_FIX_BRANCH_PREFIX, DEFAULT_WORK_BRANCH_PREFIX
from buildwave.domain.models import WorkScope
from buildwave.domain.roles import RoleId

RUN_ID_PREFIX: Final[str] = "run"
PATTERN_ID_PREFIX: Final[str] = "pat"

_SLUG_INVALID = re.compile(r"[^a-z0-9]+")
_WHITESPACE = re.compile(r"\s+")
_PUNCTUATION_TABLE: Final[dict[int, None]] = str.maketrans("", "", string.punctuation)
_RUN_ID_RE: Final[re.Pattern[str]] = re.compile(r"^run-\d{8}T\d{6}Z-[0-9a-f]{6}$")


def slugify(value: str, *, max_length: int = 48) -> str:
    """Lowercase git-safe token for ``value``; never empty."""
    slug = _SLUG_INVALID.sub("-", value.strip().lower()).strip("-")
    if len(slug) > max_length:
        slug = slug[:max_length].rstrip("-")
    if not slug:
        slug = "x" + hashlib.sha256(value.encode("utf-8")).hexdigest()[:8]
    return slug


def generate_run_id(now: datetime | None = None, *, token: str | None = None) -> str:
    moment = (now or datetime.now(tz=UTC)).astimezone(UTC)
    suffix = token if token is not None else secrets.token_hex(3)
    return f"{RUN_ID_PREFIX}-{moment.strftime('%Y%m%dT%H%M%SZ')}-{suffix}"


def validate_run_id(value: str) -> str:
    if not _RUN_ID_RE.fullmatch(value):
        raise ValueError(f"invalid run id {value!r}")
    return value


def branch_name(
    feature: str,
    role: RoleId,
    attempt: int,
    *,
    scope: WorkScope = WorkScope.FEATURE_BUILD,
    work_prefix: str = DEFAULT_WORK_BRANCH_PREFIX,
    fix_prefix: str = DEFAULT_FIX_BRANCH_PREFIX,
) -> str:
    """Isolation branch for one work item, e.g. ``work/login-form/frontend/a1``."""
    if attempt <= 0:
        raise ValueError("attempt must be > 0")
    prefix = fix_prefix if scope is WorkScope.TARGETED_BUGFIX else work_prefix
    if prefix and not prefix.endswith("/"):
        prefix = f"{prefix}/"
    return f"{prefix}{slugify(feature)}/{role.value}/a{attempt}"


def normalize_description(value: str) -> str:
    """Canonical form used to merge patterns: casefolded, no punctuation, single spaces."""
    lowered = value.casefold().translate(_PUNCTUATION_TABLE)
    return _WHITESPACE.sub(" ", lowered).strip()


def pattern_id(role: RoleId, description: str) -> str:
    digest = hashlib.sha256(
        f"{role.value}\x00{normalize_description(description)}".encode()
    ).hexdigest()
    return f"{PATTERN_ID_PREFIX}-{digest[:16]}"


def digest_text(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


__all__ = [
    "PATTERN_ID_PREFIX",
    "RUN_ID_PREFIX",
    "branch_name",
    "digest_text",
    "generate_run_id",
    "normalize_description",
    "pattern_id",
    "slugify",
    "validate_run_id",
]
