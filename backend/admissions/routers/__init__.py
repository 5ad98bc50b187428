from . import applications, drafts, health, wizard

__all__ = [
    "applications",
    "drafts",
    "health",
    "wizard",
]
