"""Checkout sessions and their reconciliation with provider intents."""
