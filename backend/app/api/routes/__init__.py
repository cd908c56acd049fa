# API Routes Module
from app.api.routes import (
    subscriptions,
    usage,
)

__all__ = [
    "subscriptions",
    "usage",
]
