"""Configuration module: settings and safety policies."""

from src.config.safety_policies import SafetyPolicy, load_safety_policies, warmup_schedule
from src.config.settings import RetrievalSettings

__all__ = [
    "RetrievalSettings",
    "SafetyPolicy",
    "load_safety_policies",
    "warmup_schedule",
]
