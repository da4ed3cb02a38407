"""Subscription helpers: current-subscription resolution, upgrades, creation and activation."""
