"""Keyword lexicons shared by the heuristic parsers.

Entries are lowercase stems matched by plain substring containment, so
"variab" hits both "variable" and "variability".
"""

SKEPTICAL_KEYWORDS: tuple[str, ...] = (
    "however",
    "limitation",
    "caveat",
    "unclear",
    "unknown",
    "insufficient",
    "conflict",
    "contradict",
    "bias",
    "confound",
    "risk",
    "fail",
    "challenge",
    "uncertain",
    "variab",
    "hetero",
    "inconsist",
)

POSITIVE_KEYWORDS: tuple[str, ...] = (
    "consistent",
    "robust",
    "replicated",
    "significant",
    "strong",
    "clear",
    "demonstrated",
    "established",
    "confirmed",
    "validated",
)

# Domain families used by the validity scorer
BIAS_KEYWORDS: tuple[str, ...] = ("bias", "confound", "control")
GENERALIZATION_KEYWORDS: tuple[str, ...] = ("population", "sample", "generaliz")
MEASUREMENT_KEYWORDS: tuple[str, ...] = ("measur", "valid", "reliab", "accuracy")
STATISTICS_KEYWORDS: tuple[str, ...] = (
    "statistic",
    "power",
    "significan",
    "p-value",
    "sample size",
)
