"""
converge — declarative infrastructure reconciliation engine.

Turns resource declarations into ordered provider calls, tracks what
exists in a durable state document, and computes diffs between the two.
"""

__version__ = "0.1.0"
