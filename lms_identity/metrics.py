"""Prometheus counters for identity workflows."""

from __future__ import annotations

from prometheus_client import Counter

LOGINS = Counter(
    "lms_identity_logins_total",
    "Login attempts by outcome.",
    ["outcome"],
)

AVATAR_INGESTIONS = Counter(
    "lms_identity_avatar_ingestions_total",
    "Background avatar ingestions by outcome.",
    ["outcome"],
)

PASSWORD_RESETS = Counter(
    "lms_identity_password_resets_total",
    "Password reset workflow events by stage.",
    ["stage"],
)
