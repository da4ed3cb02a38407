"""Payment provider webhook endpoints."""

from flowledger.platform.billing.webhooks.router import router

__all__ = ["router"]
