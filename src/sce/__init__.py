"""Screening consensus engine for multi-reviewer systematic reviews."""

__version__ = "0.1.0"
