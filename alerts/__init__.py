"""
Rule evaluation and alert routing.
"""

from .expr import Engine, ExpressionError, parse_expr, parse_duration
from .rules import (
    AlertingRule,
    ConfigError,
    RecordingRule,
    RuleGroup,
    load_rule_groups,
    render_template,
)
from .router import Alert, AlertRouter, InhibitRule, Notification, Route, TokenBucket
from .engine import RuleEvaluator, load_alert_state
