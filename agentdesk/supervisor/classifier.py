"""Deterministic intent classification for free-form requests."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Pattern, Sequence, Tuple

from agentdesk.core.models import NotificationPriority

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"

DEFAULT_CONFIDENCE_FLOOR = 0.5


@dataclass(frozen=True, slots=True)
class IntentRule:
    """Keywords and entity expectations of one intent category."""

    category: str
    keywords: Tuple[str, ...]
    expects: Optional[str] = None
    required: Tuple[str, ...] = ()
    urgency: NotificationPriority = NotificationPriority.LOW


@dataclass(frozen=True, slots=True)
class Intent:
    """Structured reading of a raw request."""

    category: str
    confidence: float
    params: Dict[str, Any] = field(default_factory=dict)
    required_params: Tuple[str, ...] = ()
    urgency: NotificationPriority = NotificationPriority.LOW
    matched_keywords: Tuple[str, ...] = ()
    raw_input: str = ""

    @property
    def is_unknown(self) -> bool:
        return self.category == UNKNOWN

    @property
    def needs_clarification(self) -> bool:
        return self.is_unknown or bool(self.required_params)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "confidence": self.confidence,
            "params": dict(self.params),
            "required_params": list(self.required_params),
            "urgency": self.urgency.name.lower(),
            "matched_keywords": list(self.matched_keywords),
        }


DEFAULT_RULES: Tuple[IntentRule, ...] = (
    IntentRule(
        "inventory_query",
        ("inventory", "check inventory", "stock", "stock level", "in stock", "how many left"),
        expects="sku",
        required=("sku",),
    ),
    IntentRule(
        "inventory_update",
        ("restock", "update inventory", "adjust inventory", "update stock", "adjust stock", "write off"),
        expects="sku",
        required=("sku", "quantity"),
        urgency=NotificationPriority.MEDIUM,
    ),
    IntentRule(
        "order_query",
        ("order status", "order details", "look up order", "find order", "my order"),
        expects="order_id",
        required=("order_id",),
    ),
    IntentRule(
        "order_cancel",
        ("cancel", "cancel order", "cancellation"),
        expects="order_id",
        required=("order_id",),
        urgency=NotificationPriority.MEDIUM,
    ),
    IntentRule(
        "order_refund",
        ("refund", "money back", "chargeback"),
        expects="order_id",
        required=("order_id",),
        urgency=NotificationPriority.MEDIUM,
    ),
    IntentRule(
        "shipping_tracking",
        ("track", "tracking", "where is my package", "delivery status", "shipment", "shipping"),
        expects="tracking_number",
        required=("tracking_number",),
    ),
    IntentRule("cs_inquiry", ("question", "how do i", "help", "inquiry", "information about")),
    IntentRule(
        "cs_complaint",
        ("complaint", "complain", "angry", "terrible", "unacceptable", "disappointed"),
        urgency=NotificationPriority.HIGH,
    ),
    IntentRule(
        "accounting_settlement",
        ("settlement", "payout", "commission", "fees", "reconcile"),
        expects="date",
    ),
    IntentRule(
        "analytics_report",
        ("report", "sales report", "analytics", "revenue", "performance", "best seller"),
        expects="date",
    ),
    IntentRule("system_status", ("system status", "health check", "server status", "uptime")),
)

ENTITY_PATTERNS: Tuple[Tuple[str, Pattern[str]], ...] = (
    ("sku", re.compile(r"\b(SKU-\d{3,})\b", re.IGNORECASE)),
    ("order_id", re.compile(r"\b(ORD-\d{4}-\d{6}|ORD-\d{3,})\b", re.IGNORECASE)),
    ("tracking_number", re.compile(r"\b(\d{12,14})\b")),
    ("quantity", re.compile(r"\b(\d+)\s*(?:units?|pcs|pieces|ea|boxes?)\b", re.IGNORECASE)),
    ("amount", re.compile(r"\$\s?(\d[\d,]*(?:\.\d{1,2})?)|\b(\d[\d,]*(?:\.\d{1,2})?)\s?(?:usd|dollars)\b", re.IGNORECASE)),
    (
        "date",
        re.compile(
            r"\b(\d{4}-\d{2}-\d{2}|today|yesterday|tomorrow|(?:this|last|next) (?:week|month))\b",
            re.IGNORECASE,
        ),
    ),
)

URGENT_MARKERS = re.compile(r"\b(urgent|asap|immediately|emergency|right now)\b", re.IGNORECASE)

# Entity that identifies the category on its own when no keyword matched.
ENTITY_FALLBACKS: Tuple[Tuple[str, str], ...] = (
    ("order_id", "order_query"),
    ("tracking_number", "shipping_tracking"),
    ("sku", "inventory_query"),
)


def normalize(raw_input: str) -> str:
    return " ".join(raw_input.strip().lower().split())


def extract_entities(text: str) -> Dict[str, Any]:
    """First match of every known entity, converted to its natural type."""
    params: Dict[str, Any] = {}
    for name, pattern in ENTITY_PATTERNS:
        match = pattern.search(text)
        if match is None:
            continue
        value = next(group for group in match.groups() if group is not None)
        if name in ("sku", "order_id"):
            params[name] = value.upper()
        elif name == "quantity":
            params[name] = int(value)
        elif name == "amount":
            params[name] = float(value.replace(",", ""))
        else:
            params[name] = value.lower()
    return params


class IntentClassifier:
    """Keyword and entity rules mapping raw input to an ``Intent``.

    A category scores 0.5 for its first keyword hit and 0.15 per further hit.
    A multi-word keyword hit adds 0.1 once, the category's expected entity adds
    0.2 and every other extracted entity 0.05 (at most 0.1). Scores are capped
    at 1.0. The highest score wins; ties keep rule order. A winner below the
    confidence floor is reported as ``unknown``.
    """

    def __init__(
        self,
        rules: Sequence[IntentRule] = DEFAULT_RULES,
        *,
        confidence_floor: float = DEFAULT_CONFIDENCE_FLOOR,
    ) -> None:
        if not 0.0 <= confidence_floor <= 1.0:
            raise ValueError("confidence_floor must be within [0, 1]")
        self.rules = tuple(rules)
        self.confidence_floor = confidence_floor
        self._matchers = {
            rule.category: [
                (keyword, re.compile(r"\b" + re.escape(keyword.lower()) + r"\b"))
                for keyword in rule.keywords
            ]
            for rule in self.rules
        }

    @property
    def categories(self) -> List[str]:
        return [rule.category for rule in self.rules]

    def rule_for(self, category: str) -> Optional[IntentRule]:
        return next((rule for rule in self.rules if rule.category == category), None)

    def classify(self, raw_input: str) -> Intent:
        text = normalize(raw_input)
        params = extract_entities(raw_input)

        best: Optional[Tuple[float, IntentRule, Tuple[str, ...]]] = None
        for rule in self.rules:
            hits = tuple(keyword for keyword, matcher in self._matchers[rule.category] if matcher.search(text))
            if not hits:
                continue
            score = self._score(rule, hits, params)
            if best is None or score > best[0]:
                best = (score, rule, hits)

        if best is None:
            best = self._infer_from_entities(params)

        if best is None:
            intent = Intent(category=UNKNOWN, confidence=0.0, params=params, raw_input=raw_input)
        else:
            score, rule, hits = best
            if score < self.confidence_floor:
                intent = Intent(
                    category=UNKNOWN,
                    confidence=score,
                    params=params,
                    matched_keywords=hits,
                    raw_input=raw_input,
                )
            else:
                intent = Intent(
                    category=rule.category,
                    confidence=score,
                    params=params,
                    required_params=tuple(name for name in rule.required if name not in params),
                    urgency=self._urgency(text, rule),
                    matched_keywords=hits,
                    raw_input=raw_input,
                )
        logger.info(
            "Classified request as %s (confidence=%.2f, params=%s)",
            intent.category,
            intent.confidence,
            sorted(intent.params),
        )
        return intent

    def _score(self, rule: IntentRule, hits: Tuple[str, ...], params: Dict[str, Any]) -> float:
        score = 0.5 + 0.15 * (len(hits) - 1)
        if any(" " in hit for hit in hits):
            score += 0.1
        others = len(params)
        if rule.expects is not None and rule.expects in params:
            score += 0.2
            others -= 1
        score += min(0.05 * others, 0.1)
        return round(min(score, 1.0), 4)

    def _infer_from_entities(
        self, params: Dict[str, Any]
    ) -> Optional[Tuple[float, IntentRule, Tuple[str, ...]]]:
        for entity, category in ENTITY_FALLBACKS:
            rule = self.rule_for(category)
            if entity in params and rule is not None:
                return 0.5, rule, ()
        return None

    @staticmethod
    def _urgency(text: str, rule: IntentRule) -> NotificationPriority:
        if URGENT_MARKERS.search(text):
            return NotificationPriority.URGENT
        return rule.urgency
