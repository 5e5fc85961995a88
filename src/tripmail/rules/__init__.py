"""Rule evaluation components.

This package provides:
- The snapshot cache over the rule store
- Tagged match strategies and the priority-ordered matcher
- Subject line variations for email re-identification
"""

from tripmail.rules.cache import MISS, ConfigCache, ConfigSnapshot
from tripmail.rules.matcher import (
    ClassificationResult,
    CompiledRule,
    ContentPatternMatcher,
    EmailInput,
    KeywordMatcher,
    MatchSurfaces,
    RuleMatcher,
    SenderMatcher,
    SubjectMatcher,
    compile_rules,
)
from tripmail.rules.subjects import subject_variations

__all__ = [
    # Cache
    "MISS",
    "ConfigCache",
    "ConfigSnapshot",
    # Matcher
    "ClassificationResult",
    "CompiledRule",
    "ContentPatternMatcher",
    "EmailInput",
    "KeywordMatcher",
    "MatchSurfaces",
    "RuleMatcher",
    "SenderMatcher",
    "SubjectMatcher",
    "compile_rules",
    # Subjects
    "subject_variations",
]
