"""Event router: decides which window keys an event touches.

Compiled once from the windowed rules.  Each distinct (dimension, window)
pair across the rule set becomes a subscription, and each distinct event
selection on that pair becomes a measure.  One transaction therefore fans
out to an account key, a card key, a merchant key, and so on, and each
key only updates the measures whose selection the event passes.
"""

from collections import OrderedDict

from fraud_detector.window import WindowKey


class EventRouter:

    def __init__(self, rules=()):
        # (dimension, window) -> signature -> (Selection, MeasureSpec)
        self._subscriptions: OrderedDict = OrderedDict()
        for rule in sorted(rules, key=lambda r: r.id):
            if rule.per_event:
                continue
            self.subscribe(rule)

    def subscribe(self, rule) -> None:
        slot = self._subscriptions.setdefault((rule.dimension, rule.window), OrderedDict())
        spec = rule.measure
        if spec.signature in slot:
            selection, existing = slot[spec.signature]
            slot[spec.signature] = (selection, existing.merge(spec))
        else:
            slot[spec.signature] = (rule.selection, spec)

    @property
    def subscriptions(self) -> list:
        return list(self._subscriptions)

    def route(self, event) -> list[tuple[WindowKey, list]]:
        """Return [(window_key, [MeasureSpec, ...]), ...] for this event.

        Keys whose measures all reject the event are left out, so the store
        never creates state an event has nothing to contribute to.
        """
        routed = []
        for (dimension, window), measures in self._subscriptions.items():
            value = event.get(dimension)
            if value is None:
                continue
            selected = [spec for selection, spec in measures.values() if selection.match(event)]
            if not selected:
                continue
            key = WindowKey(dimension, str(value), window, window.bucket(event.timestamp))
            routed.append((key, selected))
        return routed

    def __len__(self):
        return len(self._subscriptions)
