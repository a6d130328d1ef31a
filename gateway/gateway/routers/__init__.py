"""HTTP router modules for the gateway."""

from __future__ import annotations

from gateway.routers import auth, functions, health, provision, webhooks

__all__ = ["auth", "functions", "health", "provision", "webhooks"]
