"""Persistence helpers shared by the task store and machine registry."""
