"""
Discovery of values a transaction does not surface directly: subscription
handles and request sequence numbers.
"""

from .handles import HandleResolver
from .sequence import REQUESTED_TOPIC, SequenceResolver

__all__ = ["HandleResolver", "SequenceResolver", "REQUESTED_TOPIC"]
