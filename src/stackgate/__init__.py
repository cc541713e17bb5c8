"""Dependency-ordered infrastructure unit orchestration with policy gating."""

__version__ = "0.1.0"
