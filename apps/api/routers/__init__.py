"""Routers package."""

from . import (
    health,
    credits,
    images,
    checkout,
    subscriptions,
    webhooks,
    admin,
)
