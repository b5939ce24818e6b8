"""Rule-based email categorization.

Rules match on sender domain, sender address, subject keyword or label;
the highest-priority match decides an email's category.
"""

from mailsync.classifier.categorization import (
    DEFAULT_CATEGORIES,
    DEFAULT_RULES,
    CategorizationRule,
    categorize,
    load_rules,
    parse_rule,
    rule_matches,
)

__all__ = [
    "CategorizationRule",
    "DEFAULT_CATEGORIES",
    "DEFAULT_RULES",
    "categorize",
    "load_rules",
    "parse_rule",
    "rule_matches",
]
