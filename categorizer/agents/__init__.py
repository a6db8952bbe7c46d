"""Agents package: the classifier interface and the LLM-backed category agent."""

from .base import BaseClassifier  # noqa: F401
from .category_agent import CategoryAgent  # noqa: F401
