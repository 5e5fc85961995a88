"""Custom exception types for the travel email engine.

Error messages follow one convention:
- What failed (specific operation or component)
- Why it failed (the specific condition)
- How to fix it (actionable guidance, where there is any)

The degraded-condition errors (StoreUnavailable, InvalidRulePattern,
AmbiguousActiveTemplate, MissingTypeConfiguration) are recovered inside the
engine. They never reach callers of classify / resolve_prompt /
resolve_timezone.
"""


class TripmailError(Exception):
    """Base exception for all engine errors."""

    pass


class ConfigValidationError(TripmailError):
    """Raised when config.yaml fails Pydantic validation.

    Includes specific field errors with actionable messages.
    """

    pass


class ConfigLoadError(TripmailError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class DatabaseError(TripmailError):
    """Raised when SQLite operations fail."""

    pass


class StoreUnavailable(DatabaseError):
    """Raised when the rule store cannot be read.

    Attributes:
        operation: The store operation that failed (e.g. 'load_all')
    """

    def __init__(self, message: str, operation: str | None = None):
        super().__init__(message)
        self.operation = operation


class InvalidRulePattern(TripmailError):
    """Raised when a content_pattern rule's regex fails to compile.

    Non-fatal: the matcher substitutes substring containment for the rule.

    Attributes:
        rule_name: Name of the offending classification rule
        pattern: The pattern source that failed to compile
    """

    def __init__(self, message: str, rule_name: str, pattern: str):
        super().__init__(message)
        self.rule_name = rule_name
        self.pattern = pattern


class AmbiguousActiveTemplate(TripmailError):
    """More than one prompt template is active for the same (category, type).

    Readers resolve this by preferring the highest version. Instances are
    collected on the config snapshot as an audit trail rather than raised.

    Attributes:
        category: Template category ('classification' or 'parsing')
        template_type: Booking type identifier or 'base'
        versions: Active versions found, highest first
    """

    def __init__(self, category: str, template_type: str, versions: list[int]):
        super().__init__(
            f"{len(versions)} active prompt templates for ({category}, {template_type}): "
            f"versions {versions}. Using version {versions[0]}; activate a single "
            "version to clear this warning."
        )
        self.category = category
        self.template_type = template_type
        self.versions = versions


class MissingTypeConfiguration(TripmailError):
    """Raised when a booking type has no SegmentTypeConfig.

    Attributes:
        email_type: The booking type label that has no configuration
    """

    def __init__(self, email_type: str):
        super().__init__(f"No segment type configuration for '{email_type}'")
        self.email_type = email_type


class TemplateNotFoundError(TripmailError):
    """Raised when an administrative operation references an unknown template id."""

    def __init__(self, template_id: int):
        super().__init__(f"Prompt template {template_id} not found")
        self.template_id = template_id


class SeedError(TripmailError):
    """Raised when a seed file cannot be loaded or validated."""

    pass
