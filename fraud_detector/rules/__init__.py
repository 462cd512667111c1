# Two ways to write a rule, same interface.
#
# Threshold rules (one aggregate read + a comparison) are declared in YAML
# under rules/catalog/, one file per rule, and loaded by rules/loader.py.
# That covers nearly all of the catalog and keeps thresholds reviewable
# without reading code.
#
# Rules that need logic a condition list can't express (hour ranges,
# reference-data lookups) are Python classes, one per file, registered in
# PYTHON_RULES below.


class Rule:
    """Base detection rule.

    A rule is either per-event (window.kind == "event": check() looks at the
    event alone) or windowed (trigger() looks at the aggregate snapshot of
    the rule's key).  Both kinds are keyed by ``dimension`` so repeated
    firings land on the same alert.
    """

    id: str
    name: str
    severity: str  # low | medium | high | critical
    score: float = 50.0
    cooldown_seconds: float = 0.0
    dimension: str = "account_id"
    window = None  # WindowSpec
    description: str = ""
    # Rules that count alert events are excluded from alert feedback so a
    # rule can't feed itself.
    consumes_alerts: bool = False

    @property
    def per_event(self) -> bool:
        return self.window is None or not self.window.stateful

    def match(self, event) -> bool:
        """Return True if this event is relevant to the rule."""
        raise NotImplementedError

    def group_key(self, event) -> str | None:
        """Value of the rule's key dimension on this event, if any."""
        return event.get(self.dimension)

    # -- per-event rules ---------------------------------------------------

    def check(self, event, reference) -> dict | None:
        """Return evidence if the event alone should alert, else None.

        May raise ReferenceDataUnavailable; the evaluator then skips this
        rule for this event.
        """
        raise NotImplementedError

    # -- windowed rules ----------------------------------------------------

    @property
    def measure(self):
        """MeasureSpec this rule reads from its key."""
        raise NotImplementedError

    def trigger(self, snapshot) -> bool:
        """Given the rule's measure snapshot, should we alert?"""
        raise NotImplementedError

    def evidence(self, snapshot) -> dict:
        """Summarize the measure for investigators."""
        return {}

    # -- configuration -----------------------------------------------------

    def configure(self, overrides: dict | None) -> "Rule":
        """Apply the generic per-rule overrides (score, severity, cooldown)."""
        if not overrides:
            return self
        if "score" in overrides:
            self.score = float(overrides["score"])
        if "severity" in overrides:
            self.severity = overrides["severity"]
        if "cooldown_seconds" in overrides:
            self.cooldown_seconds = float(overrides["cooldown_seconds"])
        return self

    def __repr__(self):
        return f"<{type(self).__name__} {self.id}>"


from fraud_detector.rules.late_night import LateNightActivity
from fraud_detector.rules.high_risk_merchant import HighRiskMerchant
from fraud_detector.rules.high_risk_location import HighRiskLocation

PYTHON_RULES = [LateNightActivity, HighRiskMerchant, HighRiskLocation]


def default_rules(config=None, directory=None) -> list[Rule]:
    """YAML rules from *directory* (default: the bundled catalog) plus the
    Python rules, with config overrides applied."""
    from fraud_detector.rules.loader import load_rules

    overrides = dict(config.rules) if config is not None else {}
    session_idle = config.session_idle_seconds if config is not None else 86_400

    rules = load_rules(directory, overrides=overrides, session_idle_seconds=session_idle)
    for cls in PYTHON_RULES:
        rule_overrides = overrides.get(cls.id, {})
        if rule_overrides.get("enabled", True) is False:
            continue
        rules.append(cls(rule_overrides))
    return sorted(rules, key=lambda r: r.id)
