"""Record rules loader for rules.yaml."""

from __future__ import annotations

from pathlib import Path

import yaml

from ticket_mirror.rules.models import RecordRules


def load_rules(path: str | None) -> RecordRules:
    if path is None:
        return RecordRules()
    rules_path = Path(path)
    if not rules_path.exists():
        raise FileNotFoundError(f"Rules file not found: {rules_path}")
    with rules_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    return RecordRules.from_yaml(data)
