"""Exam results engine: grading, score aggregation and ranking."""

__version__ = "1.0.0"
