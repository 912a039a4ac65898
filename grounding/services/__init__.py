"""
Service Layer

- GroundingService: runs the four grounding stages for one message
"""

from grounding.services.grounding import GroundingService

__all__ = [
    "GroundingService",
]
