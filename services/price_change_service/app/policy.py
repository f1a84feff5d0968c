"""Policy gate guarding transitions to APPLIED."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any


def evaluate(policy_result: Mapping[str, Any] | Any | None) -> bool:
    """Return True when a stored policy evaluation allows the price change to be applied.

    The verdict is computed upstream; only an explicit ``ok is True`` passes.
    """

    if policy_result is None:
        return False
    if isinstance(policy_result, Mapping):
        return policy_result.get("ok") is True
    return getattr(policy_result, "ok", None) is True


def failed_checks(policy_result: Mapping[str, Any] | None) -> list[str]:
    if not isinstance(policy_result, Mapping):
        return []
    checks = policy_result.get("checks") or []
    return [
        str(check.get("name"))
        for check in checks
        if isinstance(check, Mapping) and check.get("ok") is not True
    ]
