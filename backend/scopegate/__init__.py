"""Scoped-permission and distributed rate-limiting authorization engine."""
