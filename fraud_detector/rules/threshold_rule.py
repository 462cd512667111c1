"""Threshold rule loaded from YAML.

Implements the Rule interface (match, check, trigger, evidence, measure) so
the evaluator treats it the same as a Python rule.  The YAML schema keeps
Sigma's metadata fields (title, level, description) and selection syntax,
and adds ``key`` (dimension + window) and ``conditions`` (metric, operator,
threshold) for the aggregate predicate.
"""

from fraud_detector.rules import Rule
from fraud_detector.selection import OPS, Selection
from fraud_detector.window import EVENT, MeasureSpec, WindowSpec

# Sigma 'level' -> our severity vocabulary.
_LEVEL_MAP = {
    "informational": "low",
    "low": "low",
    "medium": "medium",
    "high": "high",
    "critical": "critical",
}

_WINDOW_METRICS = ("count", "sum", "avg", "distinct", "elapsed")
_EVENT_METRICS = ("value",)
_FIELD_METRICS = ("sum", "avg", "distinct", "value")


class ThresholdRule(Rule):
    """A detection rule parsed from a YAML definition."""

    def __init__(self, definition: dict):
        self._def = definition
        key = definition["key"]

        self.id = definition["id"]
        self.name = definition["title"]
        self.severity = definition.get("severity") or _LEVEL_MAP.get(
            definition["level"], definition["level"]
        )
        self.description = definition.get("description", "")
        self.score = float(definition.get("score", 50))
        self.cooldown_seconds = float(definition.get("cooldown_seconds", 0))
        self.dimension = key["dimension"]
        self.window = WindowSpec(key["window"], key.get("size_seconds"))
        self.selection = Selection(definition.get("selection"))
        kind = (definition.get("selection") or {}).get("kind")
        self.consumes_alerts = kind == "alert" or (
            isinstance(kind, list) and "alert" in kind
        )

        self.conditions = [dict(c) for c in definition["conditions"]]
        allowed = _EVENT_METRICS if self.window.kind == EVENT else _WINDOW_METRICS
        for cond in self.conditions:
            if cond.get("metric") not in allowed:
                raise ValueError(
                    f"{self.id}: metric {cond.get('metric')!r} not valid for "
                    f"{self.window.kind} window"
                )
            if cond["metric"] in _FIELD_METRICS and "field" not in cond:
                raise ValueError(f"{self.id}: metric {cond['metric']} needs a field")
            if cond.get("operator") not in OPS:
                raise ValueError(f"{self.id}: unknown operator {cond.get('operator')!r}")
            if "threshold" not in cond:
                raise ValueError(f"{self.id}: condition has no threshold")

        self._measure = MeasureSpec(
            self.selection.signature,
            sum_fields=tuple(sorted({
                c["field"] for c in self.conditions if c["metric"] in ("sum", "avg")
            })),
            distinct_fields=tuple(sorted({
                c["field"] for c in self.conditions if c["metric"] == "distinct"
            })),
        )

    # ------------------------------------------------------------------
    # Rule interface
    # ------------------------------------------------------------------

    def match(self, event) -> bool:
        return self.selection.match(event)

    @property
    def measure(self) -> MeasureSpec:
        return self._measure

    def check(self, event, reference) -> dict | None:
        """Per-event form: every condition reads a field of the event."""
        observed = {}
        for cond in self.conditions:
            value = event.get(cond["field"])
            if not self._compare(value, cond):
                return None
            observed[cond["field"]] = value
        return observed

    def trigger(self, snapshot) -> bool:
        if snapshot is None:
            return False
        return all(
            self._compare(self._metric(snapshot, cond), cond)
            for cond in self.conditions
        )

    def evidence(self, snapshot) -> dict:
        if snapshot is None:
            return {}
        result = {
            "event_count": snapshot.count,
            "window_start": snapshot.min_ts,
            "window_end": snapshot.max_ts,
        }
        for cond in self.conditions:
            result[self._label(cond)] = self._metric(snapshot, cond)
        for name, sample in snapshot.samples.items():
            result[f"{name}_sample"] = list(sample)
        return result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _metric(snapshot, cond):
        metric = cond["metric"]
        if metric == "count":
            return snapshot.count
        elif metric == "sum":
            return snapshot.sum(cond["field"])
        elif metric == "avg":
            return snapshot.avg(cond["field"])
        elif metric == "distinct":
            return snapshot.distinct_count(cond["field"])
        elif metric == "elapsed":
            return snapshot.elapsed
        else:
            raise ValueError(f"Unknown metric: {metric}")

    @staticmethod
    def _compare(value, cond) -> bool:
        if value is None or isinstance(value, bool):
            return False
        try:
            return OPS[cond["operator"]](value, cond["threshold"])
        except TypeError:
            return False

    @staticmethod
    def _label(cond) -> str:
        if cond["metric"] == "elapsed":
            return "elapsed_seconds"
        if "field" in cond:
            return f"{cond['metric']}_{cond['field']}"
        return cond["metric"]
