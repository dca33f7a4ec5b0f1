from __future__ import annotations

from dataclasses import dataclass, field
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter


RULE_TYPE_OVERRIDE = "override"
RULE_TYPE_PERCENTAGE = "percentage"
RULE_TYPE_PLAN_GATE = "plan_gate"

FEATURE_TYPE_BOOLEAN = "boolean"
FEATURE_TYPE_PERCENTAGE = "percentage"
FEATURE_TYPE_PLAN = "plan"


class OverrideRuleValue(BaseModel):
    kind: Literal["override"] = RULE_TYPE_OVERRIDE
    enabled: bool
    # Exact-match conditions against the request context; empty matches everyone.
    conditions: dict[str, Any] | None = None


class PercentageRuleValue(BaseModel):
    kind: Literal["percentage"] = RULE_TYPE_PERCENTAGE
    percentage: float = Field(ge=0, le=100)


class PlanGateRuleValue(BaseModel):
    kind: Literal["plan_gate"] = RULE_TYPE_PLAN_GATE
    plans: list[str] = Field(default_factory=list)


RuleValue = Annotated[
    Union[OverrideRuleValue, PercentageRuleValue, PlanGateRuleValue],
    Field(discriminator="kind"),
]

_RULE_VALUE_ADAPTER: TypeAdapter[Any] = TypeAdapter(RuleValue)


def parse_rule_value(rule_type: str, payload: Any) -> OverrideRuleValue | PercentageRuleValue | PlanGateRuleValue:
    """Validate a stored rule payload against the model for its rule type.

    The row's ``rule_type`` column is the discriminator; stored payloads do not
    carry it. Raises ``pydantic.ValidationError`` for unknown rule types or
    payloads that do not fit the model.
    """
    body = dict(payload) if isinstance(payload, dict) else {}
    body["kind"] = rule_type
    return _RULE_VALUE_ADAPTER.validate_python(body)


@dataclass(frozen=True)
class EvaluationRule:
    id: str
    rule_type: str
    priority: int
    value: OverrideRuleValue | PercentageRuleValue | PlanGateRuleValue


@dataclass(frozen=True)
class FeatureWithRules:
    # Read-only snapshot of a feature plus its enabled environment rules.
    id: str
    key: str
    type: str
    default_value: bool
    enabled: bool
    rules: tuple[EvaluationRule, ...] = field(default_factory=tuple)

    def rules_of(self, rule_type: str) -> list[EvaluationRule]:
        # Rules keep repository order (priority descending).
        return [rule for rule in self.rules if rule.rule_type == rule_type]
