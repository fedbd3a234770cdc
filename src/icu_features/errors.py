"""
Exceptions raised by the feature extraction engine.

ConfigurationError is fatal: it signals a programming or registry mistake and is
raised before any output is produced. InvalidWindowError describes a single ICU
stay whose window bounds are inverted; the extractor collects these into its
quality report instead of raising them, so one bad stay never aborts a batch.
"""


class FeatureExtractionError(Exception):
    """Base class for all extraction errors."""


class ConfigurationError(FeatureExtractionError):
    """A source tag has no unit rule, a predicate is malformed, or a feature is unknown."""


class InvalidWindowError(FeatureExtractionError):
    """An entity's window start lies after its window end."""

    def __init__(self, entity_id, start, end):
        self.entity_id = entity_id
        self.start = start
        self.end = end
        super().__init__(f"Window for entity {entity_id} is inverted: start {start} is after end {end}")
