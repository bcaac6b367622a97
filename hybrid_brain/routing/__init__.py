from hybrid_brain.routing.classifier import QueryClassifier
from hybrid_brain.routing.patterns import PatternCategory, PatternKind

__all__ = ["PatternCategory", "PatternKind", "QueryClassifier"]
