"""Shared pytest fixtures."""

from __future__ import annotations

import json

import pytest

from helpers import MINT, OTHER_TARGET, ROLE, TARGET, word


@pytest.fixture
def policy_calls() -> list[dict]:
    """Mint-only policy on TARGET plus wholesale access to OTHER_TARGET."""
    return [
        {"call": "allowTarget", "roleKey": ROLE, "targetAddress": TARGET},
        {"call": "scopeTarget", "roleKey": ROLE, "targetAddress": TARGET},
        {
            "call": "scopeParameter",
            "roleKey": ROLE,
            "targetAddress": TARGET,
            "functionSig": MINT,
            "paramIndex": 1,
            "kind": 1,
            "operator": 16,
            "literal": "0x" + word(99).hex(),
        },
        {"call": "allowTarget", "roleKey": ROLE, "targetAddress": OTHER_TARGET, "options": 1},
    ]


@pytest.fixture
def policy_file(tmp_path, policy_calls):
    path = tmp_path / "policy.json"
    path.write_text(json.dumps(policy_calls), encoding="utf-8")
    return path
