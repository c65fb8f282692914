"""
GrantMatch API Routers
FastAPI router modules for the match engine.
"""
from backend.api import admin, health, matches, organizations

__all__ = [
    "admin",
    "health",
    "matches",
    "organizations",
]
