"""Load threshold rules from a directory of YAML files."""

from pathlib import Path

import yaml

from fraud_detector.rules.threshold_rule import ThresholdRule

CATALOG_DIR = Path(__file__).resolve().parent / "catalog"

_REQUIRED_FIELDS = ("id", "title", "level", "key", "conditions")
_REQUIRED_KEY = ("dimension", "window")
_OVERRIDE_FIELDS = (
    "enabled",
    "threshold",
    "conditions",
    "window_seconds",
    "score",
    "severity",
    "cooldown_seconds",
)


def load_rules(
    directory: str | Path | None = None,
    overrides: dict | None = None,
    session_idle_seconds: float = 86_400,
) -> list[ThresholdRule]:
    """Glob *.yml in *directory* (default: bundled catalog), return rules.

    *overrides* maps rule id -> {threshold, window_seconds, score, severity,
    cooldown_seconds, enabled, conditions}.  Session windows without an
    explicit size get *session_idle_seconds*.
    """
    directory = Path(directory) if directory is not None else CATALOG_DIR
    if not directory.is_dir():
        raise FileNotFoundError(f"Rule directory not found: {directory}")
    overrides = overrides or {}

    rules = []
    seen = set()
    for path in sorted(directory.glob("*.yml")):
        definition = _parse_and_validate(path)
        rule_id = definition["id"]
        if rule_id in seen:
            raise ValueError(f"{path.name}: duplicate rule id '{rule_id}'")
        seen.add(rule_id)

        rule_overrides = overrides.get(rule_id, {})
        if rule_overrides.get("enabled", True) is False:
            continue
        definition = _apply_overrides(definition, rule_overrides, session_idle_seconds)
        try:
            rules.append(ThresholdRule(definition))
        except ValueError as e:
            raise ValueError(f"{path.name}: {e}") from e
    return rules


def load_rule(path: str | Path, session_idle_seconds: float = 86_400) -> ThresholdRule:
    """Load a single rule file: useful for tests."""
    definition = _parse_and_validate(Path(path))
    return ThresholdRule(_apply_overrides(definition, {}, session_idle_seconds))


def _parse_and_validate(path: Path) -> dict:
    with open(path) as f:
        definition = yaml.safe_load(f)

    if not isinstance(definition, dict):
        raise ValueError(f"{path.name}: rule file must contain a mapping")
    for field in _REQUIRED_FIELDS:
        if field not in definition:
            raise ValueError(f"{path.name}: missing required field '{field}'")

    key = definition["key"]
    for field in _REQUIRED_KEY:
        if field not in key:
            raise ValueError(f"{path.name}: missing required key field '{field}'")

    conditions = definition["conditions"]
    if not isinstance(conditions, list) or not conditions:
        raise ValueError(f"{path.name}: conditions must be a non-empty list")

    return definition


def _apply_overrides(definition: dict, overrides: dict, session_idle_seconds: float) -> dict:
    unknown = set(overrides) - set(_OVERRIDE_FIELDS)
    if unknown:
        raise ValueError(
            f"{definition['id']}: unknown override(s) {', '.join(sorted(unknown))}"
        )

    definition = dict(definition)
    key = dict(definition["key"])
    conditions = [dict(c) for c in overrides.get("conditions", definition["conditions"])]

    if key["window"] == "session" and key.get("size_seconds") is None:
        key["size_seconds"] = session_idle_seconds
    if "window_seconds" in overrides:
        key["size_seconds"] = overrides["window_seconds"]
    # A bare threshold override applies to the rule's first condition, which
    # by convention is the one the rule is named after.
    if "threshold" in overrides:
        conditions[0]["threshold"] = overrides["threshold"]
    for field in ("score", "severity", "cooldown_seconds"):
        if field in overrides:
            definition[field] = overrides[field]

    definition["key"] = key
    definition["conditions"] = conditions
    return definition
