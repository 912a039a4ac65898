"""
Grounding Layer

Context and memory management for an AI tutoring assistant: conversation
memory, a verified-fact knowledge base, multi-level context building and
token-budget optimization.
"""

__version__ = "1.0.0"
