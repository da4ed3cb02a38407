"""Billing core: enums, tables and the repository used by every billing module."""
