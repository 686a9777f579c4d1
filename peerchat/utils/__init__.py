"""Utility functions shared across the peerchat package."""
from __future__ import annotations
